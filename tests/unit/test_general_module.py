import pytest

from meshadmin.core.config import AppSettings
from meshadmin.core.contracts import Actor
from meshadmin.core.errors import ActionError, SettingsValidationError
from meshadmin.core.store import SettingsStore
from meshadmin.modules.admin.general import GeneralModule, build_service_urls


async def _general(store: SettingsStore, app_settings: AppSettings) -> GeneralModule:
    module = GeneralModule(store, app_settings)
    await store.register_module(module.name, module.get_default_settings())
    await module.init()
    return module


def test_build_service_urls_omits_default_port() -> None:
    assert build_service_urls("support.example.com", "443") == {
        "meshcentralUrl": "https://support.example.com",
        "supportPageUrl": "https://support.example.com/support",
        "adminDashboardUrl": "https://support.example.com/admin-settings",
    }
    assert build_service_urls("10.0.0.2", "8443")["supportPageUrl"] == (
        "https://10.0.0.2:8443/support"
    )
    assert build_service_urls("", None)["meshcentralUrl"] == "https://localhost"


@pytest.mark.asyncio
async def test_init_seeds_environment_values_and_urls(
    store: SettingsStore, app_settings: AppSettings
) -> None:
    module = await _general(store, app_settings)
    settings = module.get_settings()

    assert settings["serverDomain"] == "support.example.com"
    assert settings["httpsPort"] == "443"
    assert settings["meshcentralUrl"] == "https://support.example.com"
    assert settings["adminDashboardUrl"] == "https://support.example.com/admin-settings"


@pytest.mark.asyncio
async def test_save_recomputes_urls(store: SettingsStore, app_settings: AppSettings) -> None:
    module = await _general(store, app_settings)

    saved = await module.save_settings({"serverDomain": "help.example.org", "httpsPort": "8443"})

    assert saved["meshcentralUrl"] == "https://help.example.org:8443"
    assert module.get_public_config()["urls"]["support"] == "https://help.example.org:8443/support"


@pytest.mark.asyncio
async def test_save_rejects_bad_domain_and_port(
    store: SettingsStore, app_settings: AppSettings
) -> None:
    module = await _general(store, app_settings)

    with pytest.raises(SettingsValidationError) as excinfo:
        await module.save_settings({"serverDomain": "bad domain", "httpPort": "eighty"})

    assert {issue.field for issue in excinfo.value.issues} == {"serverDomain", "httpPort"}
    with pytest.raises(SettingsValidationError):
        await module.save_settings({"serverDomain": ""})


@pytest.mark.asyncio
async def test_admin_secret_requires_enabled_flag(
    store: SettingsStore, app_settings: AppSettings
) -> None:
    module = await _general(store, app_settings)

    await module.save_settings({"adminAuthSecret": "k3y"})
    assert module.admin_secret() is None

    await module.save_settings({"adminAuthEnabled": True})
    assert module.admin_secret() == "k3y"

    await module.save_settings({"adminAuthSecret": ""})
    assert module.admin_secret() is None


@pytest.mark.asyncio
async def test_test_connection_reports_issues(
    store: SettingsStore, app_settings: AppSettings
) -> None:
    module = await _general(store, app_settings)

    ok = await module.execute_action("testConnection")
    assert ok == {
        "success": True,
        "message": (
            "Configuration looks valid. Server should be accessible at "
            "https://support.example.com"
        ),
    }

    await module.save_settings({"serverDomain": "localhost"})
    failed = await module.execute_action("testConnection")
    assert failed["success"] is False
    assert failed["issues"] == ["Server domain is not configured (still using localhost)"]


@pytest.mark.asyncio
async def test_generate_urls_and_env_config(
    store: SettingsStore, app_settings: AppSettings
) -> None:
    module = await _general(store, app_settings)

    generated = await module.execute_action("generateUrls")
    assert generated["urls"]["admin"] == "https://support.example.com/admin-settings"

    await module.save_settings({"adminAuthEnabled": True, "adminAuthSecret": "k3y"})
    env = await module.execute_action("showEnvConfig")
    lines = env["config"].splitlines()
    assert "SERVER_DOMAIN=support.example.com" in lines
    assert "NGINX_HTTPS_PORT=443" in lines
    assert "TZ=UTC" in lines
    assert "ADMIN_AUTH_SECRET=k3y" in lines

    with pytest.raises(ActionError, match="requires admin"):
        await module.execute_action("showEnvConfig", {}, Actor(id="u1", is_admin=False))
