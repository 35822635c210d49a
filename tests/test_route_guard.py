import pytest

from authgate.service.route_guard import (
    DEFAULT_CONFIG,
    GuardAction,
    GuardDecision,
    RouteGuardConfig,
    decide,
    is_safe_redirect,
    redirect_location,
)


def test_protected_path_without_session_redirects_to_login():
    decision = decide("/dashboard", has_valid_session=False)

    assert decision.action is GuardAction.REDIRECT_TO_LOGIN
    assert decision.original_path == "/dashboard"
    assert redirect_location(decision) == "/login?redirect=%2Fdashboard"


def test_auth_page_with_session_redirects_to_app():
    decision = decide("/login", has_valid_session=True)

    assert decision.action is GuardAction.REDIRECT_TO_APP
    assert redirect_location(decision) == "/dashboard"


def test_protected_path_with_session_is_allowed():
    assert decide("/dashboard", has_valid_session=True) == GuardDecision.allow()


@pytest.mark.parametrize("path", ["/", "/about", "/pricing"])
@pytest.mark.parametrize("has_session", [True, False])
def test_unlisted_paths_always_allowed(path, has_session):
    assert decide(path, has_session).action is GuardAction.ALLOW


def test_prefix_matching():
    assert DEFAULT_CONFIG.is_protected("/dashboard/settings")
    assert DEFAULT_CONFIG.is_auth_only("/register/confirm")
    assert not DEFAULT_CONFIG.applies_to("/static/app.js")


def test_nested_path_kept_in_redirect():
    decision = decide("/dashboard/reports?id=3", has_valid_session=False)

    assert redirect_location(decision) == "/login?redirect=%2Fdashboard%2Freports%3Fid%3D3"


def test_custom_config():
    config = RouteGuardConfig.from_paths(
        ["/app", "/account"], ["/signin"], login_path="/signin", app_home_path="/app"
    )

    assert redirect_location(decide("/account", False, config), config) == (
        "/signin?redirect=%2Faccount"
    )
    assert redirect_location(decide("/signin", True, config), config) == "/app"


def test_allow_has_no_location():
    with pytest.raises(ValueError):
        redirect_location(GuardDecision.allow())


@pytest.mark.parametrize(
    "target",
    ["/dashboard", "/dashboard?tab=billing", "/dashboard/settings#profile"],
)
def test_relative_paths_are_safe_redirects(target):
    assert is_safe_redirect(target) is True


@pytest.mark.parametrize(
    "target",
    [
        None,
        "",
        "dashboard",
        "//evil.com",
        "/\\evil.com",
        "/\t/evil.com",
        "https://evil.com/dashboard",
        "javascript:alert(1)",
    ],
)
def test_cross_origin_targets_are_refused(target):
    assert is_safe_redirect(target) is False
