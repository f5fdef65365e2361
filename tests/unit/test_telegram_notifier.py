import datetime as dt
from collections.abc import Callable
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pytest

from meshadmin.core.config import AppSettings
from meshadmin.core.contracts import Actor, DeliveryResult
from meshadmin.core.store import SettingsStore
from meshadmin.modules.output.telegram_notifier import (
    TelegramNotifier,
    in_quiet_hours,
    parse_time_of_day,
    sanitize_user_settings,
)

EVENT = {"deviceName": "PC-01", "ipAddress": "10.0.0.5", "timestamp": "2024-05-04T12:00:00Z"}


def _at(hour: int, minute: int) -> Callable[[], dt.datetime]:
    return lambda: dt.datetime(2024, 5, 4, hour, minute, tzinfo=dt.UTC)


async def _notifier(
    store: SettingsStore,
    app_settings: AppSettings,
    senders: Any,
    *,
    clock: Callable[[], dt.datetime] | None = None,
    **settings: Any,
) -> TelegramNotifier:
    notifier = TelegramNotifier(
        store, app_settings, sender_factory=senders, clock=clock or _at(12, 0)
    )
    await store.register_module(notifier.name, notifier.get_default_settings())
    await notifier.init()
    await notifier.save_settings(
        {"enabled": True, "botToken": "123:abc", "chatIds": "42", **settings}
    )
    return notifier


@pytest.mark.asyncio
async def test_device_connect_is_delivered_to_every_chat(
    store: SettingsStore, app_settings: AppSettings, telegram_senders: Any
) -> None:
    notifier = await _notifier(store, app_settings, telegram_senders, chatIds="42\n-100777")

    result = await notifier.handle_event("device.connect", dict(EVENT))

    assert result.handled is True
    assert result.event_type == "device.connect"
    assert [item.recipient for item in result.results or []] == ["chat:42", "chat:-100777"]
    assert [message["chat_id"] for message in telegram_senders.messages] == ["42", "-100777"]
    text = telegram_senders.messages[0]["text"]
    assert "Device Connected" in text
    assert "PC-01" in text
    assert "10.0.0.5" in text
    assert telegram_senders.messages[0]["token"] == "123:abc"


@pytest.mark.asyncio
async def test_payload_values_are_html_escaped_and_missing_marked(
    store: SettingsStore, app_settings: AppSettings, telegram_senders: Any
) -> None:
    notifier = await _notifier(store, app_settings, telegram_senders)

    await notifier.handle_event("device.connect", {"deviceName": "<b>evil</b> & co"})

    text = telegram_senders.messages[0]["text"]
    assert "&lt;b&gt;evil&lt;/b&gt; &amp; co" in text
    assert "<b>IP:</b> N/A" in text


@pytest.mark.asyncio
async def test_custom_template_is_used(
    store: SettingsStore, app_settings: AppSettings, telegram_senders: Any
) -> None:
    notifier = await _notifier(
        store,
        app_settings,
        telegram_senders,
        templates={"deviceConnect": "up: {deviceName}"},
    )

    await notifier.handle_event("device.connect", dict(EVENT))
    await notifier.handle_event("device.disconnect", dict(EVENT))

    assert telegram_senders.messages[0]["text"] == "up: PC-01"
    assert "Device Disconnected" in telegram_senders.messages[1]["text"]


@pytest.mark.asyncio
async def test_boolean_and_numeric_payload_values_are_rendered(
    store: SettingsStore, app_settings: AppSettings, telegram_senders: Any
) -> None:
    notifier = await _notifier(
        store,
        app_settings,
        telegram_senders,
        templates={"deviceConnect": "{deviceName} online={online} cores={cores} gone={gone}"},
    )

    await notifier.handle_event(
        "device.connect", {"deviceName": "PC-1", "online": True, "cores": 8, "gone": None}
    )

    assert telegram_senders.messages[0]["text"] == "PC-1 online=True cores=8 gone=N/A"


@pytest.mark.asyncio
async def test_quiet_hours_follow_dashboard_timezone(
    store: SettingsStore, app_settings: AppSettings, telegram_senders: Any
) -> None:
    try:
        ZoneInfo("Asia/Tokyo")
    except ZoneInfoNotFoundError:
        pytest.skip("timezone database not available")
    notifier = await _notifier(
        store,
        app_settings,
        telegram_senders,
        clock=_at(14, 0),
        quietHoursEnabled=True,
        quietHoursStart="22:00",
        quietHoursEnd="08:00",
    )

    assert notifier.timezone_name() == "UTC"
    assert notifier.is_quiet() is False

    await store.set("general.timezone", "Asia/Tokyo")

    assert notifier.timezone_name() == "Asia/Tokyo"
    assert notifier.is_quiet() is True
    result = await notifier.handle_event("device.connect", dict(EVENT))
    assert result.reason == "Quiet hours active"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("hour", "minute", "suppressed"),
    [(23, 30, True), (3, 0, True), (22, 0, True), (12, 0, False), (8, 0, False)],
)
async def test_quiet_hours_window_spanning_midnight(
    store: SettingsStore,
    app_settings: AppSettings,
    telegram_senders: Any,
    hour: int,
    minute: int,
    suppressed: bool,
) -> None:
    notifier = await _notifier(
        store,
        app_settings,
        telegram_senders,
        clock=_at(hour, minute),
        quietHoursEnabled=True,
        quietHoursStart="22:00",
        quietHoursEnd="08:00",
    )

    result = await notifier.handle_event("device.connect", dict(EVENT))

    if suppressed:
        assert result.handled is False
        assert result.reason == "Quiet hours active"
        assert telegram_senders.messages == []
    else:
        assert result.handled is True
        assert len(telegram_senders.messages) == 1


def test_in_quiet_hours_bounds() -> None:
    noon = dt.time(12, 0)

    assert in_quiet_hours("09:00", "17:00", noon)
    assert not in_quiet_hours("09:00", "17:00", dt.time(17, 0))
    assert not in_quiet_hours("10:00", "10:00", noon)
    assert not in_quiet_hours("25:00", "08:00", noon)
    assert not in_quiet_hours(None, "08:00", noon)
    assert parse_time_of_day("07:45") == 465
    assert parse_time_of_day("7:45") is None


@pytest.mark.asyncio
async def test_suppression_reasons(
    store: SettingsStore, app_settings: AppSettings, telegram_senders: Any
) -> None:
    notifier = await _notifier(store, app_settings, telegram_senders)

    login = await notifier.handle_event("user.login", {"userName": "alice"})
    assert login.handled is False
    assert login.reason == "user.login notifications disabled"

    await notifier.save_settings({"chatIds": ""})
    empty = await notifier.handle_event("device.connect", dict(EVENT))
    assert empty.reason == "No recipients configured"

    await notifier.save_settings({"enabled": False})
    disabled = await notifier.handle_event("device.connect", dict(EVENT))
    assert disabled.reason == "Module disabled"
    assert telegram_senders.messages == []


@pytest.mark.asyncio
async def test_one_failing_chat_does_not_block_others(
    store: SettingsStore, app_settings: AppSettings, telegram_senders: Any
) -> None:
    telegram_senders.failing = {"13"}
    notifier = await _notifier(store, app_settings, telegram_senders, chatIds="13, 42")

    result = await notifier.handle_event("device.connect", dict(EVENT))

    assert result.handled is True
    assert result.results == [
        DeliveryResult(recipient="chat:13", success=False, error="Bad Request: chat not found"),
        DeliveryResult(recipient="chat:42", success=True),
    ]
    assert [message["chat_id"] for message in telegram_senders.messages] == ["42"]


@pytest.mark.asyncio
async def test_per_user_credentials_receive_their_events(
    store: SettingsStore, app_settings: AppSettings, telegram_senders: Any
) -> None:
    notifier = await _notifier(store, app_settings, telegram_senders, notifyUserLogin=True)
    await notifier.save_user_settings(
        "u1", {"enabled": True, "botToken": "999:user", "chatId": "555"}
    )
    await notifier.save_user_settings(
        "u2", {"enabled": False, "botToken": "888:off", "chatId": "666"}
    )

    connect = await notifier.handle_event("device.connect", dict(EVENT))
    login = await notifier.handle_event("user.login", {"userName": "alice"})

    assert [item.recipient for item in connect.results or []] == ["chat:42", "user:u1"]
    assert [item.recipient for item in login.results or []] == ["chat:42"]
    assert telegram_senders.senders["999:user"].messages[0]["chat_id"] == "555"
    assert "888:off" not in telegram_senders.senders


@pytest.mark.asyncio
async def test_user_settings_crud(
    store: SettingsStore, app_settings: AppSettings, telegram_senders: Any
) -> None:
    notifier = await _notifier(store, app_settings, telegram_senders)

    defaults = notifier.get_user_settings("nobody")
    assert defaults["enabled"] is False
    assert defaults["notifyDeviceConnect"] is True
    assert "updatedAt" not in defaults

    saved = await notifier.save_user_settings("u1", {"botToken": " 1:x ", "notifyConnect": False})
    assert saved["botToken"] == "1:x"
    assert saved["notifyDeviceConnect"] is False
    assert notifier.get_user_settings("u1")["updatedAt"] == saved["updatedAt"]

    await notifier.save_settings({"users": {}, "chatIds": "7"})
    assert "u1" in notifier.get_all_user_settings()

    assert await notifier.delete_user_settings("u1") is True
    assert await notifier.delete_user_settings("u1") is False


def test_sanitize_user_settings_prefers_current_toggle_names() -> None:
    record = sanitize_user_settings(
        {"enabled": 1, "notifyConnect": False, "notifyDeviceConnect": True, "notifyLogin": True}
    )

    assert record["enabled"] is True
    assert record["notifyDeviceConnect"] is True
    assert record["notifyUserLogin"] is True
    assert record["notifyLoginFailed"] is False


@pytest.mark.asyncio
async def test_test_action_uses_global_or_user_credentials(
    store: SettingsStore, app_settings: AppSettings, telegram_senders: Any
) -> None:
    notifier = await _notifier(store, app_settings, telegram_senders)

    result = await notifier.execute_action("test")
    assert result == {"success": True, "message": "Test message sent successfully!"}
    assert "Test Notification" in telegram_senders.messages[-1]["text"]

    viewer = Actor(id="u9", name="viewer", is_admin=False)
    assert await notifier.execute_action("test", {}, viewer) == {
        "success": False,
        "error": "Please configure your Bot Token and Chat ID first",
    }

    await notifier.save_user_settings("u9", {"botToken": "5:tok", "chatId": "99"})
    assert (await notifier.execute_action("testUser", {"userId": "u9"}))["success"] is True
    assert telegram_senders.senders["5:tok"].messages[0]["chat_id"] == "99"


@pytest.mark.asyncio
async def test_test_action_reports_missing_configuration(
    store: SettingsStore, app_settings: AppSettings, telegram_senders: Any
) -> None:
    notifier = await _notifier(store, app_settings, telegram_senders, chatIds="")

    assert await notifier.execute_action("test") == {
        "success": False,
        "error": "Bot token and chat ID are required",
    }
    assert await notifier.execute_action("testUser", {}) == {
        "success": False,
        "error": "userId is required",
    }
