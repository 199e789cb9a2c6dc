from netlab.main import app
from netlab.auth import get_current_user

PUBLIC_PATHS = {
    "/api/auth/login",
    "/api/auth/register",
    "/api/payments/webhook",
    "/metrics",
}


def test_all_routes_protected():
    for route in app.routes:
        path = getattr(route, 'path', '')
        if not path.startswith('/api'):
            continue
        if path in PUBLIC_PATHS:
            continue
        if not hasattr(route, 'dependant'):
            continue
        deps = [d.call for d in route.dependant.dependencies]
        assert get_current_user in deps, f"{path} missing authentication"


def test_webhook_is_public_but_signed(client):
    resp = client.post("/api/payments/webhook", content=b"cpm_trans_id=RES_1&cpm_result=00")
    assert resp.status_code == 401
