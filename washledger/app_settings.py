"""
Program settings (loyalty threshold, notification toggles), stored as one document and read
once per handler invocation. Handlers receive the resulting immutable snapshot as an argument.
"""
import logging

from pydantic import BaseModel, ConfigDict, ValidationError

from washledger.store import LedgerStore

logger = logging.getLogger(__name__)

DEFAULT_WASHES_REQUIRED_FOR_FREE = 6
DEFAULT_REMINDER_AFTER_DAYS = 30


class NotificationSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_completed: bool = True
    free_wash_available: bool = True
    reminder_after_days: int = DEFAULT_REMINDER_AFTER_DAYS


class AppSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    # <= 0 turns earning off
    washes_required_for_free: int = DEFAULT_WASHES_REQUIRED_FOR_FREE
    notifications: NotificationSettings = NotificationSettings()


DEFAULT_APP_SETTINGS = AppSettings()


def parse_app_settings(document: dict | None) -> AppSettings:
    """
    Build a snapshot from a stored document. Accepts the flat layout and the legacy one that
    nests washes_required_for_free under "promotions".
    """
    if not document:
        return DEFAULT_APP_SETTINGS
    data = dict(document)
    promotions = data.pop("promotions", None) or {}
    if "washes_required_for_free" not in data and "washes_required_for_free" in promotions:
        data["washes_required_for_free"] = promotions["washes_required_for_free"]
    if data.get("washes_required_for_free") is None:
        data.pop("washes_required_for_free", None)
    return AppSettings.model_validate(data)


async def load_app_settings(store: LedgerStore) -> AppSettings:
    document = await store.get_app_settings_document()
    if document is None:
        return DEFAULT_APP_SETTINGS
    try:
        return parse_app_settings(document)
    except ValidationError as e:
        logger.warning("Stored app settings are invalid, using defaults: %s", e)
        return DEFAULT_APP_SETTINGS
