from cafe_pos import models
from cafe_pos.errors import ErrorKind
from cafe_pos.schemas import Role
from cafe_pos.users import UserRoleStore, ensure_profile, load_profile, search_users


def add_profiles(session_factory, *profiles):
    db = session_factory()
    try:
        for user_id, username in profiles:
            ensure_profile(db, user_id, username)
    finally:
        db.close()


def test_list_without_roles(session_factory):
    """Profils triés par nom ; sans rôle, le rôle est absent."""
    add_profiles(session_factory, ("u2", "Yasmine"), ("u1", "Amine"))
    store = UserRoleStore(session_factory)

    assert store.list().ok
    assert [u.username for u in store.users] == ["Amine", "Yasmine"]
    assert all(u.role is None for u in store.users)


def test_set_role_inserts_then_updates(session_factory):
    """Le premier rôle crée une ligne, le suivant la met à jour."""
    add_profiles(session_factory, ("u1", "Amine"))
    store = UserRoleStore(session_factory)

    result = store.set_role("u1", Role.SERVER)
    assert result.ok
    assert result.message == "Rôle mis à jour"
    assert store.users[0].role == Role.SERVER

    assert store.set_role("u1", "ADMIN").ok
    assert store.users[0].role == Role.ADMIN

    db = session_factory()
    try:
        assert db.query(models.UserRole).filter(models.UserRole.user_id == "u1").count() == 1
    finally:
        db.close()


def test_remove_role(session_factory):
    """Retirer le rôle laisse le profil sans rôle."""
    add_profiles(session_factory, ("u1", "Amine"))
    store = UserRoleStore(session_factory)
    store.set_role("u1", Role.ADMIN)

    result = store.remove_role("u1")

    assert result.ok
    assert result.message == "Rôle supprimé"
    assert store.users[0].role is None


def test_set_unknown_role(session_factory):
    """Un rôle inconnu est refusé."""
    store = UserRoleStore(session_factory)
    assert store.set_role("u1", "CHEF").error.kind == ErrorKind.VALIDATION


def test_load_profile(session_factory):
    """load_profile renvoie le profil avec son rôle, ou None."""
    db = session_factory()
    try:
        ensure_profile(db, "u1", "Amine", Role.SERVER)
        profile = load_profile(db, "u1")
        assert profile.username == "Amine"
        assert profile.role == Role.SERVER
        assert load_profile(db, "unknown") is None
    finally:
        db.close()


def test_ensure_profile_is_idempotent(session_factory):
    """Appeler ensure_profile deux fois ne duplique rien."""
    db = session_factory()
    try:
        ensure_profile(db, "u1", "Amine", Role.ADMIN)
        ensure_profile(db, "u1", "Amine", Role.ADMIN)
        assert db.query(models.Profile).count() == 1
        assert db.query(models.UserRole).count() == 1
    finally:
        db.close()


def test_search_users(session_factory):
    """Recherche par nom d'utilisateur, insensible à la casse."""
    add_profiles(session_factory, ("u1", "Amine"), ("u2", "Yasmine"), ("u3", "Karim"))
    store = UserRoleStore(session_factory)
    store.list()

    assert [u.username for u in search_users(store.users, "mine")] == ["Amine", "Yasmine"]
    assert len(search_users(store.users, "")) == 3
