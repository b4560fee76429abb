import logging
from typing import Any, Union

from .models import ReferralSettings, UpdateSettingsRequest

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = ReferralSettings(
    id=0,
    referral_discount_amount=5000,
    referrer_points_earned=10,
    points_redemption_minimum=50,
    points_redemption_value=100,
    is_active=True,
)


def default_settings() -> ReferralSettings:
    """Read-time fallback; never written back to storage."""
    return DEFAULT_SETTINGS.model_copy()


class SettingsResolver:
    def __init__(self, storage):
        self.storage = storage

    def get_settings(self) -> ReferralSettings:
        """Stored settings record, or defaults when none exists or storage is unreachable."""
        try:
            record = self.storage.get_settings_record()
        except Exception:
            logger.exception("Failed to read referral settings, using defaults")
            return default_settings()
        if record is None:
            logger.debug("No referral settings stored, using defaults")
            return default_settings()
        return record

    def fetch_settings(self) -> ReferralSettings:
        """Like ``get_settings`` but lets storage errors propagate."""
        return self.storage.get_settings_record() or default_settings()

    def update_settings(self, fields: Union[UpdateSettingsRequest, dict[str, Any]]) -> ReferralSettings:
        if isinstance(fields, UpdateSettingsRequest):
            fields = fields.model_dump(exclude_none=True)
        settings = self.storage.save_settings(fields)
        logger.info(
            "Referral settings updated: discount=%d referrer_points=%d minimum=%d value=%d active=%s",
            settings.referral_discount_amount,
            settings.referrer_points_earned,
            settings.points_redemption_minimum,
            settings.points_redemption_value,
            settings.is_active,
        )
        return settings
