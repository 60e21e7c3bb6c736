from core.auth import AdminUser
from services.admin_dashboard.app.main import SESSION_CACHE_SECONDS, Dashboard


def user(token: str) -> AdminUser:
    return AdminUser(id=f"user-{token}", email="owner@example.com", access_token=token)


def test_verified_token_is_cached_until_it_expires():
    now = [100.0]
    dashboard = Dashboard(clock=lambda: now[0])
    dashboard.remember(user("t1"))

    assert dashboard.cached_user("t1").id == "user-t1"
    now[0] += SESSION_CACHE_SECONDS
    assert dashboard.cached_user("t1") is None


def test_remember_sweeps_expired_tokens():
    now = [0.0]
    dashboard = Dashboard(clock=lambda: now[0])
    for token in ("t1", "t2", "t3"):
        dashboard.remember(user(token))

    now[0] = SESSION_CACHE_SECONDS + 1
    dashboard.remember(user("t4"))

    # Expired tokens are gone even though they were never looked up again
    assert list(dashboard._verified) == ["t4"]


def test_forget_drops_token():
    dashboard = Dashboard()
    dashboard.remember(user("t1"))
    dashboard.forget("t1")
    assert dashboard.cached_user("t1") is None
