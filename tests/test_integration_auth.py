"""End-to-end tests of the auth HTTP surface.

Runs against the in-memory directory and ephemeral store. Email codes are
read from the ``dev`` environment echo of ``/send_otp``.
"""

from uuid import UUID

import pytest
from fastapi.testclient import TestClient

from orgauth.app import app
from orgauth.service.public_key import CeremonyError
from orgauth.service.runtime import get_runtime
from orgauth.storage.models import (
    MEMBERSHIP_STATUS_ACTIVE,
    MEMBERSHIP_STATUS_INVITED,
    MEMBERSHIP_STATUS_UNVERIFIED,
)


@pytest.fixture
def client():
    return TestClient(app)


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _org_signup(client, email, org_name="Acme", reference_key="acme-key"):
    resp = client.post(
        "/organisations/signup",
        json={
            "name": "Alice",
            "lastname": "Admin",
            "email": email,
            "reference_key": reference_key,
            "organisation_name": org_name,
        },
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]["uuid"]


def _signup(client, email, reference_key=None, **extra):
    body = {
        "name": "Bob",
        "lastname": "Builder",
        "email": email,
        "platform": "p2p" if reference_key else "trading",
        **extra,
    }
    if reference_key:
        body["reference_key"] = reference_key
    resp = client.post("/signup", json=body)
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


def _login(client, user_id):
    sent = client.post("/send_otp", json={"uuid": user_id, "type": "email"})
    assert sent.status_code == 200, sent.text
    code = sent.json()["data"]["code"]
    verified = client.post(
        "/verify_otp", json={"uuid": user_id, "type": "email", "code": code}
    )
    assert verified.status_code == 200, verified.text
    data = verified.json()["data"]
    assert data["status"] == "finished"
    return data["jwt"]


def _info(client, token):
    return client.get("/me/info", headers=_bearer(token))


class FakeCeremony:
    """Accepts a proof when it echoes the parked challenge."""

    def __init__(self):
        self.counter = 0

    def _challenge(self):
        self.counter += 1
        return f"challenge-{self.counter}"

    def begin_registration(self, user):
        challenge = self._challenge()
        return {"challenge": challenge, "rp": {"id": "localhost"}}, {"challenge": challenge}

    def finish_registration(self, user, state, proof):
        if proof.get("challenge") != state["challenge"]:
            raise CeremonyError("challenge mismatch")
        return {"id": proof["id"], "public_key": "pk", "sign_count": 0}

    def begin_login(self, user, credential):
        challenge = self._challenge()
        return (
            {"challenge": challenge, "allowCredentials": [{"id": credential["id"]}]},
            {"challenge": challenge},
        )

    def finish_login(self, user, credential, state, proof):
        if proof.get("challenge") != state["challenge"]:
            raise CeremonyError("challenge mismatch")
        return credential["sign_count"]


@pytest.fixture
def ceremony():
    fake = FakeCeremony()
    get_runtime().public_keys.ceremony = fake
    return fake


class TestFirstAdmin:
    def test_organization_founder_becomes_admin(self, client):
        """The first member to verify in a fresh organization is its admin."""
        alice = _org_signup(client, "alice@acme.test")
        token = _login(client, alice)

        resp = _info(client, token)
        assert resp.status_code == 200
        info = resp.json()["data"]
        assert info["user_id"] == alice
        assert info["organisation_role"] == "admin"
        assert info["email"] == "alice@acme.test"

    def test_second_member_is_regular(self, client):
        """Members who verify after an admin exists stay regular."""
        _login(client, _org_signup(client, "alice@acme.test"))
        bob = _signup(client, "bob@acme.test", reference_key="acme-key")["uuid"]
        token = _login(client, bob)
        info = _info(client, token).json()["data"]
        assert info["organisation_role"] == "regular"
        membership = get_runtime().directory.list_memberships(bob)[0]
        assert membership.status == MEMBERSHIP_STATUS_ACTIVE
        assert membership.is_home is True

    def test_user_without_organization_gets_empty_scope(self, client):
        """Trading users without memberships still get a session."""
        user = _signup(client, "trader@example.com")["uuid"]
        info = _info(client, _login(client, user)).json()["data"]
        assert info["organisation_id"] == ""
        assert info["organisation_role"] == ""


class TestSwitch:
    def test_switch_revokes_previous_token(self, client):
        """After a switch the old token is forbidden and the new one is scoped."""
        carol = _org_signup(client, "carol@acme.test")
        runtime = get_runtime()
        globex = runtime.directory.create_organization("Globex", "globex-key")
        runtime.directory.create_membership(carol, globex.id)
        old = _login(client, carol)
        acme_id = _info(client, old).json()["data"]["organisation_id"]

        resp = client.post(f"/switch/{globex.id}", headers=_bearer(old))
        assert resp.status_code == 200, resp.text
        new = resp.json()["data"]["jwt"]

        assert _info(client, old).status_code == 403
        assert _info(client, new).json()["data"]["organisation_id"] == globex.id
        home = runtime.directory.get_membership(carol, acme_id)
        assert home.is_home is True

    def test_switch_to_foreign_organization(self, client):
        """Switching into an organization without a membership is forbidden."""
        carol = _org_signup(client, "carol@acme.test")
        other = get_runtime().directory.create_organization("Initech", "initech-key")
        token = _login(client, carol)
        resp = client.post(f"/switch/{other.id}", headers=_bearer(token))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"
        assert _info(client, token).status_code == 200


class TestInvitations:
    def test_invited_member_accepts(self, client):
        """Invitations stay pending through login and activate on accept."""
        dan = _signup(client, "dan@example.com")["uuid"]
        runtime = get_runtime()
        org = runtime.directory.create_organization("Globex", "globex-key")
        runtime.directory.create_membership(dan, org.id, status=MEMBERSHIP_STATUS_INVITED)
        token = _login(client, dan)
        assert runtime.directory.get_membership(dan, org.id).status == MEMBERSHIP_STATUS_INVITED

        resp = client.post(f"/invitations/{org.id}/accept", headers=_bearer(token))
        assert resp.status_code == 200, resp.text
        assert resp.json()["data"]["status"] == MEMBERSHIP_STATUS_ACTIVE


class TestSilencedOutcomes:
    def test_signin_unknown_email_returns_random_id(self, client):
        """Unknown accounts look like known ones."""
        resp = client.post("/signin", json={"email": "ghost@example.com"})
        assert resp.status_code == 200
        UUID(resp.json()["data"]["uuid"])

    def test_signin_known_email(self, client):
        """Known emails resolve to the user's id."""
        user = _signup(client, "ada@example.com")["uuid"]
        resp = client.post("/signin", json={"email": "ADA@example.com"})
        assert resp.json()["data"]["uuid"] == user

    def test_duplicate_signup_returns_decoy(self, client):
        """Signing up with a verified user's email answers with another id."""
        first = _signup(client, "ada@example.com")["uuid"]
        _login(client, first)
        second = _signup(client, "ada@example.com")["uuid"]
        assert second != first
        assert get_runtime().directory.get_user(second) is None

    def test_send_otp_unknown_user(self, client):
        """Sending to an unknown id quietly does nothing."""
        resp = client.post(
            "/send_otp",
            json={"uuid": "00000000-0000-0000-0000-000000000001", "type": "email"},
        )
        assert resp.status_code == 204

    def test_verify_otp_unknown_user(self, client):
        """Unknown ids fail like wrong codes."""
        resp = client.post(
            "/verify_otp",
            json={"uuid": "00000000-0000-0000-0000-000000000001", "type": "email", "code": "ABC234"},
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Invalid code"


class TestGate:
    def test_missing_token(self, client):
        """Gated routes answer forbidden without a token."""
        resp = client.get("/me/info")
        assert resp.status_code == 403
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"] == {"code": "forbidden", "message": "forbidden", "details": None}

    def test_garbage_token(self, client):
        """Unparseable tokens are forbidden too."""
        assert client.get("/me/info", headers=_bearer("not.a.jwt")).status_code == 403
        assert client.get("/me/info", headers={"Authorization": "Token x"}).status_code == 403

    def test_ping_touches_session(self, client):
        """Ping answers 204 and keeps one session activity for the pair."""
        user = _signup(client, "ada@example.com")["uuid"]
        token = _login(client, user)
        assert client.get("/ping", headers=_bearer(token)).status_code == 204
        sessions = get_runtime().directory.list_activities(user, type="user_session")
        assert len(sessions) == 1


class TestRequests:
    def test_unknown_code_channel(self, client):
        """Invalid request bodies use the validation error envelope."""
        resp = client.post("/send_otp", json={"uuid": "x", "type": "fax"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_wrong_code(self, client):
        """A wrong code is a 401 with the shared message."""
        user = _signup(client, "ada@example.com")["uuid"]
        client.post("/send_otp", json={"uuid": user, "type": "email"})
        resp = client.post(
            "/verify_otp", json={"uuid": user, "type": "email", "code": "ZZZZZZ1"}
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Invalid code"

    def test_webauthn_signup_returns_registration_options(self, client):
        """Asking for a public key at signup returns browser options."""
        data = _signup(client, "ada@example.com", webauthn=True)
        assert data["options"]["rp"]["id"] == "localhost"
        assert data["options"]["challenge"]

    def test_invalid_reference_key(self, client):
        """Unknown reference keys are reported, not silenced."""
        resp = client.post(
            "/signup",
            json={
                "name": "Bob",
                "lastname": "Builder",
                "email": "bob@example.com",
                "platform": "p2p",
                "reference_key": "nope",
            },
        )
        assert resp.status_code == 400

    def test_health_and_headers(self, client):
        """Health reports the in-memory store and responses carry no-store."""
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json()["checks"]["redis"]["status"] == "not_configured"
        assert resp.headers["Cache-Control"] == "no-store"
        assert resp.headers["X-Request-ID"]


class TestWebAuthn:
    def _register(self, client, email="bob@acme.test"):
        org = get_runtime().directory.create_organization("Acme", "acme-key")
        data = _signup(client, email, reference_key="acme-key", webauthn=True)
        user = data["uuid"]
        resp = client.post(
            f"/signup/{user}/webauthn",
            json={"id": "cred-1", "challenge": data["options"]["challenge"]},
        )
        assert resp.status_code == 204, resp.text
        return org, user

    def _verify_code(self, client, user):
        sent = client.post("/send_otp", json={"uuid": user, "type": "email"})
        code = sent.json()["data"]["code"]
        resp = client.post("/verify_otp", json={"uuid": user, "type": "email", "code": code})
        assert resp.status_code == 200, resp.text
        return resp.json()["data"]

    def test_signup_stores_credential(self, client, ceremony):
        """Finishing registration attaches the credential to the user."""
        _, user = self._register(client)
        stored = get_runtime().directory.get_user(user)
        assert stored.has_public_key
        assert stored.credential()["id"] == "cred-1"

    def test_signup_rejects_wrong_proof(self, client, ceremony):
        """A proof that does not answer the challenge is refused."""
        data = _signup(client, "bob@example.com", webauthn=True)
        resp = client.post(
            f"/signup/{data['uuid']}/webauthn",
            json={"id": "cred-1", "challenge": "forged"},
        )
        assert resp.status_code == 401
        assert not get_runtime().directory.get_user(data["uuid"]).has_public_key

    def test_code_then_key_opens_home_session(self, client, ceremony):
        """A passed code asks for the key; the key mints a token for the home membership."""
        org, user = self._register(client)

        data = self._verify_code(client, user)
        assert data["status"] == "Web Authn"
        assert "jwt" not in data
        assert data["options"]["allowCredentials"] == [{"id": "cred-1"}]
        membership = get_runtime().directory.get_membership(user, org.id)
        assert membership.status == MEMBERSHIP_STATUS_UNVERIFIED

        resp = client.post(
            f"/signin/{user}/webauthn", json={"challenge": data["options"]["challenge"]}
        )
        assert resp.status_code == 200, resp.text
        session = resp.json()["data"]
        assert session["status"] == "finished"

        info = _info(client, session["jwt"]).json()["data"]
        assert info["organisation_id"] == org.id
        assert info["organisation_role"] == "admin"

    def test_signin_rejects_wrong_proof(self, client, ceremony):
        """A bad key assertion mints nothing and uses up the challenge."""
        _, user = self._register(client)
        options = self._verify_code(client, user)["options"]

        bad = client.post(f"/signin/{user}/webauthn", json={"challenge": "forged"})
        assert bad.status_code == 401
        retry = client.post(f"/signin/{user}/webauthn", json={"challenge": options["challenge"]})
        assert retry.status_code == 401


class TestPingdomSignup:
    def _body(self, email):
        return {"name": "Ping", "lastname": "Dom", "email": email, "platform": "trading"}

    def test_signup_is_cleaned_up(self, client):
        """The check answers like a signup and leaves no user behind."""
        resp = client.post("/signup/pingdom", json=self._body("pingdom@example.com"))
        assert resp.status_code == 200, resp.text
        user_id = resp.json()["data"]["uuid"]
        UUID(user_id)
        directory = get_runtime().directory
        assert directory.get_user(user_id) is None
        assert directory.get_user_by_email("pingdom@example.com") is None

    def test_verified_user_is_kept(self, client):
        """An existing verified account with the same email is never deleted."""
        user = _signup(client, "pingdom@example.com")["uuid"]
        _login(client, user)
        resp = client.post("/signup/pingdom", json=self._body("pingdom@example.com"))
        assert resp.status_code == 200
        assert get_runtime().directory.get_user(user) is not None
