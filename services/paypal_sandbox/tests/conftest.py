import base64
import os
import tempfile

import pytest

# must be set before repo.py creates its engine
_DB_DIR = tempfile.mkdtemp(prefix="paypal-sandbox-")
os.environ.setdefault("SANDBOX_DATABASE_URL", f"sqlite:///{os.path.join(_DB_DIR, 'sandbox.db')}")
os.environ.setdefault("SANDBOX_CLIENT_ID", "sandbox-client")
os.environ.setdefault("SANDBOX_CLIENT_SECRET", "sandbox-secret")


@pytest.fixture
def api():
    from fastapi.testclient import TestClient
    import main

    return TestClient(main.app)


def basic(client_id: str, secret: str) -> dict:
    raw = base64.b64encode(f"{client_id}:{secret}".encode()).decode()
    return {"Authorization": f"Basic {raw}"}


@pytest.fixture
def auth(api):
    r = api.post(
        "/v1/oauth2/token",
        data={"grant_type": "client_credentials"},
        headers=basic(os.environ["SANDBOX_CLIENT_ID"], os.environ["SANDBOX_CLIENT_SECRET"]),
    )
    assert r.status_code == 200
    return {"Authorization": f"Bearer {r.json()['access_token']}"}
