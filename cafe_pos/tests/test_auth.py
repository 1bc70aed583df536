import json
from datetime import datetime, timedelta, timezone

import requests

from cafe_pos import auth
from cafe_pos.auth import (
    BAD_CREDENTIALS,
    DEMO_SIGNUP_DISABLED,
    TOO_MANY_ATTEMPTS,
    AuthEvent,
    AuthSession,
    DemoIdentityProvider,
    RemoteIdentityProvider,
    SessionFile,
    select_identity_provider,
)
from cafe_pos.config import Settings
from cafe_pos.errors import ErrorKind
from cafe_pos.schemas import Role

SECRET = "test-secret-key"


# ========== Password / token helpers ==========

def test_password_hash_and_verify_roundtrip():
    """Le mot de passe haché est vérifié ; un autre mot de passe ne l'est pas."""
    hashed = auth.get_password_hash("My_S3cret_pass")

    assert hashed != "My_S3cret_pass"
    assert auth.verify_password("My_S3cret_pass", hashed) is True
    assert auth.verify_password("other_pass", hashed) is False


def test_create_and_verify_access_token():
    """Le jeton créé se décode avec la même clé et contient exp."""
    token = auth.create_access_token({"sub": "user-1", "role": "ADMIN"}, SECRET)

    assert len(token.split(".")) == 3
    payload = auth.verify_token(token, SECRET)
    assert payload["sub"] == "user-1"
    assert payload["role"] == "ADMIN"
    assert "exp" in payload
    assert auth.token_expiry(token) is not None


def test_verify_token_rejects_invalid_or_expired():
    """Jeton invalide, mauvaise clé ou expiré : None."""
    expired = auth.create_access_token({"sub": "u"}, SECRET, expires_delta=timedelta(seconds=-5))
    good = auth.create_access_token({"sub": "u"}, SECRET)

    assert auth.verify_token("invalid.token.value", SECRET) is None
    assert auth.verify_token(good, "another-key") is None
    assert auth.verify_token(expired, SECRET) is None


def test_get_secret_key_prefers_env(monkeypatch, tmp_path):
    """SECRET_KEY dans l'environnement est utilisé tel quel."""
    monkeypatch.setenv("SECRET_KEY", "from-env")
    assert auth.get_secret_key(str(tmp_path / ".secret_key")) == "from-env"


def test_get_secret_key_generates_and_reuses_file(monkeypatch, tmp_path):
    """Sans variable d'environnement, la clé est générée une fois puis relue."""
    monkeypatch.delenv("SECRET_KEY", raising=False)
    key_file = tmp_path / ".secret_key"

    first = auth.get_secret_key(str(key_file))
    second = auth.get_secret_key(str(key_file))

    assert first == second
    assert key_file.read_text(encoding="utf-8") == first


# ========== Session file ==========

def test_session_file_roundtrip(tmp_path):
    """La session enregistrée est relue ; clear() supprime le fichier."""
    session_file = SessionFile(tmp_path / "session.json")
    session = AuthSession(user_id="u1", access_token="tok", expires_at=datetime(2030, 1, 1, tzinfo=timezone.utc))

    session_file.save({"session": session.dict()})
    restored = AuthSession(**session_file.load()["session"])
    assert restored == session

    session_file.clear()
    assert session_file.load() is None


def test_corrupt_session_file_is_discarded(tmp_path):
    """Un fichier illisible est ignoré et supprimé."""
    path = tmp_path / "session.json"
    path.write_text("{not json", encoding="utf-8")

    assert SessionFile(path).load() is None
    assert not path.exists()


# ========== Demo provider ==========

def demo_provider(tmp_path, secret=SECRET):
    return DemoIdentityProvider(SessionFile(tmp_path / "session.json"), secret)


def test_demo_sign_in_and_restore(tmp_path):
    """Connexion démo : session émise, persistée et restaurée au redémarrage."""
    provider = demo_provider(tmp_path)
    events = []
    provider.on_auth_state_change(lambda event, session: events.append(event))

    result = provider.sign_in("admin@demo.com", "admin123")

    assert result.ok
    assert result.value.user_id == "demo-admin-1"
    assert events == [AuthEvent.SIGNED_IN]

    restored = demo_provider(tmp_path).get_session()
    assert restored.ok
    assert restored.value.user_id == "demo-admin-1"


def test_demo_current_profile(tmp_path):
    """current_profile suit la session : aucun profil avant connexion, puis celui du compte."""
    provider = demo_provider(tmp_path)
    assert provider.current_profile().value is None

    provider.sign_in("admin@demo.com", "admin123")
    profile = provider.current_profile().value

    assert profile.id == "demo-admin-1"
    assert profile.role == Role.ADMIN


def test_demo_bad_credentials(tmp_path):
    """Mauvais mot de passe ou compte inconnu : erreur d'authentification."""
    provider = demo_provider(tmp_path)

    for email, password in (("admin@demo.com", "wrong"), ("nobody@demo.com", "admin123")):
        result = provider.sign_in(email, password)
        assert result.error.kind == ErrorKind.AUTH
        assert result.message == BAD_CREDENTIALS


def test_demo_sign_up_disabled(tmp_path):
    """L'inscription est désactivée en mode démo."""
    result = demo_provider(tmp_path).sign_up("new@demo.com", "secret1", "Nouveau")
    assert result.message == DEMO_SIGNUP_DISABLED


def test_demo_session_with_other_key_is_dropped(tmp_path):
    """Un jeton signé avec une autre clé n'est pas restauré et le fichier est effacé."""
    demo_provider(tmp_path).sign_in("serveur@demo.com", "serveur123")

    result = demo_provider(tmp_path, secret="rotated").get_session()

    assert result.ok
    assert result.value is None
    assert not (tmp_path / "session.json").exists()


def test_demo_sign_out_and_profiles(tmp_path):
    """Déconnexion : fichier supprimé ; profils démo avec leurs rôles."""
    provider = demo_provider(tmp_path)
    provider.sign_in("serveur@demo.com", "serveur123")

    assert provider.sign_out().ok
    assert provider.get_session().value is None

    profile = provider.fetch_profile("demo-serveur-1").value
    assert profile.username == "Serveur Demo"
    assert profile.role == Role.SERVER
    assert provider.fetch_profile("unknown").value is None


# ========== Remote provider ==========

class FakeResponse:

    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self.payload = payload
        self.content = json.dumps(payload).encode() if payload is not None else b""
        self.text = self.content.decode()

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self.payload is None:
            raise ValueError("no body")
        return self.payload


class FakeHttp:

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, json=None, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "params": params, "headers": headers})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def token_payload(user_id="u1", token="access", refresh="refresh"):
    return {
        "access_token": token,
        "refresh_token": refresh,
        "expires_in": 3600,
        "user": {"id": user_id, "email": "a@cafe.tn"},
    }


def remote_provider(tmp_path, session_factory, *responses):
    http = FakeHttp(*responses)
    provider = RemoteIdentityProvider(
        "https://project.supabase.co/",
        "anon-key",
        session_factory,
        SessionFile(tmp_path / "session.json"),
        http=http,
    )
    return provider, http


def test_remote_sign_in(tmp_path, session_factory):
    """Connexion distante : appel à /auth/v1/token, session persistée, événement émis."""
    provider, http = remote_provider(tmp_path, session_factory, FakeResponse(200, token_payload()))
    events = []
    provider.on_auth_state_change(lambda event, session: events.append(event))

    result = provider.sign_in("a@cafe.tn", "secret")

    assert result.ok
    assert result.value.user_id == "u1"
    assert result.value.expires_at > datetime.now(timezone.utc)
    call = http.calls[0]
    assert call["url"] == "https://project.supabase.co/auth/v1/token"
    assert call["params"] == {"grant_type": "password"}
    assert call["headers"]["apikey"] == "anon-key"
    assert events == [AuthEvent.SIGNED_IN]
    assert (tmp_path / "session.json").exists()


def test_remote_rate_limited(tmp_path, session_factory):
    """Un 429 devient une erreur RATE_LIMITED avec le message dédié."""
    provider, _ = remote_provider(tmp_path, session_factory, FakeResponse(429, {"msg": "slow down"}))

    result = provider.sign_in("a@cafe.tn", "secret")

    assert result.error.kind == ErrorKind.RATE_LIMITED
    assert result.message == TOO_MANY_ATTEMPTS


def test_remote_malformed_expiry_is_an_auth_error(tmp_path, session_factory):
    """Une date d'expiration illisible donne une erreur d'auth, pas une exception."""
    provider, _ = remote_provider(
        tmp_path, session_factory,
        FakeResponse(200, {"user": {"id": "u"}, "access_token": "t", "expires_at": "soon"}),
        FakeResponse(200, {"user": {"id": "u"}, "access_token": "t", "expires_in": [60]}),
    )

    for _ in range(2):
        result = provider.sign_in("a@cafe.tn", "secret")
        assert result.error.kind == ErrorKind.AUTH
        assert result.message == "Réponse inattendue du service d'authentification"
    assert not (tmp_path / "session.json").exists()


def test_remote_refresh_with_malformed_expiry_signs_out(tmp_path, session_factory):
    """Rafraîchissement avec une réponse illisible : session effacée, sans exception."""
    expired_session_file(tmp_path)
    provider, _ = remote_provider(
        tmp_path, session_factory,
        FakeResponse(200, {"user": {"id": "u1"}, "access_token": "new", "expires_at": "soon"}),
    )

    result = provider.get_session()

    assert result.ok
    assert result.value is None


def test_remote_error_message_and_network_failure(tmp_path, session_factory):
    """Le message du service est repris ; une panne réseau devient une erreur d'auth."""
    provider, _ = remote_provider(
        tmp_path, session_factory,
        FakeResponse(400, {"error_description": "Invalid login credentials"}),
        requests.ConnectionError("refused"),
    )

    refused = provider.sign_in("a@cafe.tn", "bad")
    assert refused.error.kind == ErrorKind.AUTH
    assert refused.message == "Invalid login credentials"

    offline = provider.sign_in("a@cafe.tn", "bad")
    assert offline.error.kind == ErrorKind.AUTH


def test_remote_sign_up_creates_profile(tmp_path, session_factory):
    """L'inscription crée le profil local, sans rôle."""
    provider, http = remote_provider(
        tmp_path, session_factory,
        FakeResponse(200, {"id": "new-user", "email": "n@cafe.tn"}),
    )

    result = provider.sign_up("n@cafe.tn", "secret1", "Nadia")

    assert result.ok
    assert result.value == "new-user"
    assert http.calls[0]["json"]["data"] == {"username": "Nadia"}
    profile = provider.fetch_profile("new-user").value
    assert profile.username == "Nadia"
    assert profile.role is None


def expired_session_file(tmp_path, refresh="refresh"):
    session = AuthSession(
        user_id="u1",
        access_token="old",
        refresh_token=refresh,
        expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
    )
    SessionFile(tmp_path / "session.json").save({"session": session.dict()})


def test_remote_expired_session_is_refreshed(tmp_path, session_factory):
    """Une session expirée est rafraîchie et TOKEN_REFRESHED est émis."""
    expired_session_file(tmp_path)
    provider, http = remote_provider(tmp_path, session_factory, FakeResponse(200, token_payload(token="new")))
    events = []
    provider.on_auth_state_change(lambda event, session: events.append(event))

    result = provider.get_session()

    assert result.value.access_token == "new"
    assert http.calls[0]["params"] == {"grant_type": "refresh_token"}
    assert events == [AuthEvent.TOKEN_REFRESHED]


def test_remote_refresh_rate_limited(tmp_path, session_factory):
    """Rafraîchissement limité : échec RATE_LIMITED, la session reste sur disque."""
    expired_session_file(tmp_path)
    provider, _ = remote_provider(tmp_path, session_factory, FakeResponse(429))

    result = provider.get_session()

    assert result.error.kind == ErrorKind.RATE_LIMITED
    assert (tmp_path / "session.json").exists()


def test_remote_refresh_refused_signs_out(tmp_path, session_factory):
    """Rafraîchissement refusé : session effacée et SIGNED_OUT émis."""
    expired_session_file(tmp_path)
    provider, _ = remote_provider(tmp_path, session_factory, FakeResponse(400, {"error": "invalid_grant"}))
    events = []
    provider.on_auth_state_change(lambda event, session: events.append(event))

    result = provider.get_session()

    assert result.ok
    assert result.value is None
    assert events == [AuthEvent.SIGNED_OUT]
    assert not (tmp_path / "session.json").exists()


def test_remote_sign_out_failure_keeps_session(tmp_path, session_factory):
    """Si la déconnexion échoue côté service, la session locale est conservée."""
    provider, _ = remote_provider(
        tmp_path, session_factory,
        FakeResponse(200, token_payload()),
        FakeResponse(500, {"msg": "down"}),
    )
    provider.sign_in("a@cafe.tn", "secret")

    result = provider.sign_out()

    assert not result.ok
    assert provider.get_session().value.user_id == "u1"


# ========== Provider selection ==========

def test_select_identity_provider(tmp_path, session_factory):
    """Sans URL ni clé : mode démo ; avec les deux : service distant."""
    base = {"session_file": str(tmp_path / "session.json"), "secret_key": SECRET}

    demo = select_identity_provider(
        Settings(supabase_url=None, supabase_anon_key=None, **base), session_factory,
    )
    remote = select_identity_provider(
        Settings(supabase_url="https://x.supabase.co", supabase_anon_key="anon", **base), session_factory,
    )

    assert isinstance(demo, DemoIdentityProvider)
    assert demo.demo_mode
    assert isinstance(remote, RemoteIdentityProvider)
    assert not remote.demo_mode
