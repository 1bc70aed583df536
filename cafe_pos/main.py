import logging
from datetime import datetime, timedelta
from typing import Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse
from sqlalchemy.exc import SQLAlchemyError

from cafe_pos.auth import DEMO_USERS, IdentityProvider, seed_demo_profiles, select_identity_provider
from cafe_pos.config import Settings
from cafe_pos.database import init_db, make_engine, make_session_factory, wait_for_db
from cafe_pos.errors import Result
from cafe_pos.orders import OrderDraft, OrderStore
from cafe_pos.products import ProductStore, search_products
from cafe_pos.reservations import ReservationStore
from cafe_pos.schemas import (
    ORDER_TRANSITIONS,
    RESERVATION_TRANSITIONS,
    Order,
    OrderCreate,
    OrderStatus,
    OrderStatusUpdate,
    ProductCreate,
    ProductUpdate,
    Reservation,
    ReservationCreate,
    ReservationStatus,
    ReservationStatusUpdate,
    RoleUpdate,
    Table,
    UserLogin,
    UserSignUp,
    format_price,
)
from cafe_pos.session import SessionContext
from cafe_pos.tables import dashboard_stats, reconcile_tables, table_link
from cafe_pos.users import UserRoleStore, search_users

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("cafe_pos")

router = APIRouter()


class RedirectRequired(Exception):
    def __init__(self, location: str):
        super().__init__(location)
        self.location = location


# ========== Dependencies ==========

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_session_context(request: Request) -> SessionContext:
    return request.app.state.session


def get_orders(request: Request) -> OrderStore:
    return request.app.state.orders


def get_reservations(request: Request) -> ReservationStore:
    return request.app.state.reservations


def get_products(request: Request) -> ProductStore:
    return request.app.state.products


def get_users(request: Request) -> UserRoleStore:
    return request.app.state.users


def require_user(session: SessionContext = Depends(get_session_context)) -> SessionContext:
    if not session.is_authenticated:
        raise RedirectRequired("/")
    return session


def require_admin(session: SessionContext = Depends(require_user)) -> SessionContext:
    if not session.is_admin:
        raise RedirectRequired("/dashboard")
    return session


def raise_for_result(result: Result) -> Result:
    if not result.ok:
        raise HTTPException(status_code=result.error.http_status, detail=result.message)
    return result


def check_table(number: int, settings: Settings):
    if number < 1 or number > settings.tables_count:
        raise HTTPException(status_code=404, detail="Table introuvable")


def order_view(order: Order) -> dict:
    data = order.dict()
    data.update({
        "server_name": order.server_name or "N/A",
        "status_label": order.status.label,
        "final": order.status.is_terminal,
        "total_display": format_price(order.total),
        "actions": sorted(s.value for s in ORDER_TRANSITIONS[order.status]),
    })
    return data


def reservation_view(reservation: Reservation) -> dict:
    data = reservation.dict()
    data.update({
        "status_label": reservation.status.label,
        "final": reservation.status.is_terminal,
        "actions": sorted(s.value for s in RESERVATION_TRANSITIONS[reservation.status]),
    })
    return data


def table_card(table: Table) -> dict:
    return {
        "number": table.number,
        "status": table.status.value,
        "link": table_link(table),
        "order": order_view(table.order) if table.order else None,
        "reservation": reservation_view(table.reservation) if table.reservation else None,
    }


# ========== Session ==========

@router.get("/")
def landing(session: SessionContext = Depends(get_session_context)):
    data = {
        "message": "Café POS",
        "authenticated": session.is_authenticated,
        "demo_mode": session.demo_mode,
        "user": session.profile,
    }
    if session.demo_mode:
        data["demo_accounts"] = [
            {"email": a["email"], "password": a["password"], "role": a["role"].value}
            for a in DEMO_USERS.values()
        ]
    return data


@router.get("/health")
def health_check():
    return {"status": "ok", "message": "API is running"}


@router.post("/login")
def login(credentials: UserLogin, session: SessionContext = Depends(get_session_context)):
    result = raise_for_result(session.sign_in(credentials.email, credentials.password))
    logger.info(f"Signed in: {credentials.email}")
    return {"message": result.message or "Connexion réussie", "redirect": "/dashboard"}


@router.post("/signup")
def signup(user: UserSignUp, session: SessionContext = Depends(get_session_context)):
    result = raise_for_result(session.sign_up(user.email, user.password, user.username))
    return {"message": result.message or "Compte créé", "user_id": result.value}


@router.post("/logout")
def logout(session: SessionContext = Depends(require_user)):
    raise_for_result(session.sign_out())
    return {"message": "Déconnexion réussie", "redirect": "/"}


@router.get("/me")
def get_current_user_info(session: SessionContext = Depends(require_user)):
    return {"user": session.profile, "user_id": session.session.user_id}


# ========== Dashboard ==========

@router.get("/dashboard")
def dashboard(
    session: SessionContext = Depends(require_user),
    orders: OrderStore = Depends(get_orders),
    reservations: ReservationStore = Depends(get_reservations),
    settings: Settings = Depends(get_settings),
):
    raise_for_result(orders.list())
    raise_for_result(reservations.list())

    now = datetime.now().astimezone()
    tables = reconcile_tables(
        orders.orders,
        reservations.reservations,
        now,
        table_count=settings.tables_count,
        lookahead=timedelta(minutes=settings.reservation_lookahead_minutes),
    )
    stats = dashboard_stats(orders.orders, reservations.reservations, now)
    stats["today_revenue_display"] = format_price(stats["today_revenue"])

    username = session.profile.username if session.profile else ""
    return {
        "greeting": f"Bonjour, {username}".strip(),
        "stats": stats,
        "tables": [table_card(table) for table in tables],
    }


# ========== Orders ==========

@router.get("/commandes")
def list_orders(
    status: Optional[OrderStatus] = None,
    session: SessionContext = Depends(require_user),
    orders: OrderStore = Depends(get_orders),
):
    raise_for_result(orders.list())
    return {"orders": [order_view(order) for order in orders.filter_by_status(status)]}


@router.get("/commandes/nouvelle")
def new_order_page(
    table: int = 1,
    q: str = "",
    session: SessionContext = Depends(require_user),
    products: ProductStore = Depends(get_products),
    settings: Settings = Depends(get_settings),
):
    check_table(table, settings)
    raise_for_result(products.list())
    return {
        "table_number": table,
        "products": search_products(products.active_products(), q),
    }


@router.post("/commandes/nouvelle")
def create_order(
    payload: OrderCreate,
    table: int = 1,
    session: SessionContext = Depends(require_user),
    orders: OrderStore = Depends(get_orders),
    products: ProductStore = Depends(get_products),
    settings: Settings = Depends(get_settings),
):
    check_table(table, settings)
    if not payload.items:
        raise HTTPException(status_code=400, detail="La commande est vide")

    raise_for_result(products.list())
    draft = OrderDraft(table)
    for line in payload.items:
        product = products.get(line.product_id)
        if product is None or not product.active:
            raise HTTPException(status_code=400, detail=f"Produit indisponible : {line.product_id}")
        draft.add_product(product, line.quantity)

    result = raise_for_result(orders.create(table, session.session.user_id, draft.items, draft.total))
    return {
        "message": result.message,
        "order_id": result.value,
        "total": format_price(draft.total),
        "redirect": "/dashboard",
    }


@router.put("/commandes/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: OrderStatusUpdate,
    session: SessionContext = Depends(require_user),
    orders: OrderStore = Depends(get_orders),
):
    result = raise_for_result(orders.update_status(order_id, payload.status))
    return {"message": result.message}


# ========== Reservations ==========

@router.get("/reservations")
def list_reservations(
    status: Optional[ReservationStatus] = None,
    session: SessionContext = Depends(require_user),
    reservations: ReservationStore = Depends(get_reservations),
    settings: Settings = Depends(get_settings),
):
    raise_for_result(reservations.list())
    return {
        "tables": list(range(1, settings.tables_count + 1)),
        "reservations": [reservation_view(r) for r in reservations.filter_by_status(status)],
    }


@router.post("/reservations")
def create_reservation(
    payload: ReservationCreate,
    session: SessionContext = Depends(require_user),
    reservations: ReservationStore = Depends(get_reservations),
    settings: Settings = Depends(get_settings),
):
    check_table(payload.table_number, settings)
    result = raise_for_result(reservations.create(
        payload.table_number,
        payload.reserved_at,
        created_by=session.session.user_id,
        client_name=payload.client_name,
        party_size=payload.party_size,
        note=payload.note,
    ))
    return {"message": result.message, "reservation_id": result.value}


@router.put("/reservations/{reservation_id}/status")
def update_reservation_status(
    reservation_id: str,
    payload: ReservationStatusUpdate,
    session: SessionContext = Depends(require_user),
    reservations: ReservationStore = Depends(get_reservations),
):
    result = raise_for_result(reservations.update_status(reservation_id, payload.status))
    return {"message": result.message}


# ========== Products (admin) ==========

@router.get("/produits")
def list_products(
    q: str = "",
    session: SessionContext = Depends(require_admin),
    products: ProductStore = Depends(get_products),
):
    raise_for_result(products.list())
    return {"products": search_products(products.products, q)}


@router.post("/produits")
def create_product(
    payload: ProductCreate,
    session: SessionContext = Depends(require_admin),
    products: ProductStore = Depends(get_products),
):
    result = raise_for_result(products.create(payload.name, payload.price, payload.active))
    return {"message": result.message, "product_id": result.value}


@router.put("/produits/{product_id}")
def update_product(
    product_id: str,
    payload: ProductUpdate,
    session: SessionContext = Depends(require_admin),
    products: ProductStore = Depends(get_products),
):
    result = raise_for_result(products.update(product_id, **payload.dict(exclude_unset=True)))
    return {"message": result.message}


@router.post("/produits/{product_id}/toggle")
def toggle_product(
    product_id: str,
    session: SessionContext = Depends(require_admin),
    products: ProductStore = Depends(get_products),
):
    raise_for_result(products.list())
    result = raise_for_result(products.toggle_active(product_id))
    return {"message": result.message}


@router.delete("/produits/{product_id}")
def delete_product(
    product_id: str,
    session: SessionContext = Depends(require_admin),
    products: ProductStore = Depends(get_products),
):
    result = raise_for_result(products.delete(product_id))
    return {"message": result.message}


# ========== Users (admin) ==========

@router.get("/utilisateurs")
def list_users(
    q: str = "",
    session: SessionContext = Depends(require_admin),
    users: UserRoleStore = Depends(get_users),
):
    raise_for_result(users.list())
    return {"users": search_users(users.users, q)}


@router.put("/utilisateurs/{user_id}/role")
def set_user_role(
    user_id: str,
    payload: RoleUpdate,
    session: SessionContext = Depends(require_admin),
    users: UserRoleStore = Depends(get_users),
):
    result = raise_for_result(users.set_role(user_id, payload.role))
    return {"message": result.message}


@router.delete("/utilisateurs/{user_id}/role")
def remove_user_role(
    user_id: str,
    session: SessionContext = Depends(require_admin),
    users: UserRoleStore = Depends(get_users),
):
    result = raise_for_result(users.remove_role(user_id))
    return {"message": result.message}


# ========== Application ==========

def create_app(settings: Optional[Settings] = None, provider: Optional[IdentityProvider] = None) -> FastAPI:
    settings = settings or Settings()
    engine = make_engine(settings.database_url)
    session_factory = make_session_factory(engine)
    provider = provider or select_identity_provider(settings, session_factory)

    app = FastAPI(title="Café POS")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.orders = OrderStore(session_factory)
    app.state.reservations = ReservationStore(session_factory)
    app.state.products = ProductStore(session_factory)
    app.state.users = UserRoleStore(session_factory)
    app.state.session = SessionContext(
        provider,
        profile_fetch_delay=settings.profile_fetch_delay,
        retry_backoff=settings.auth_retry_backoff,
    )

    @app.exception_handler(RedirectRequired)
    def redirect_handler(request: Request, exc: RedirectRequired):
        return RedirectResponse(url=exc.location, status_code=status.HTTP_303_SEE_OTHER)

    @app.on_event("startup")
    def startup_event():
        if settings.is_sqlite or wait_for_db(engine):
            try:
                init_db(engine)
                logger.info("Database tables ready")
            except SQLAlchemyError as e:
                logger.error(f"Error creating database tables: {e}")
            if provider.demo_mode:
                seed_demo_profiles(session_factory)
        else:
            logger.error("Database not ready at startup")
        app.state.session.start()

    @app.on_event("shutdown")
    def shutdown_event():
        app.state.session.close()
        engine.dispose()

    app.include_router(router)
    return app


if __name__ == "__main__":
    uvicorn.run("cafe_pos.main:create_app", factory=True, host="0.0.0.0", port=8000)
