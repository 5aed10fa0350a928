from __future__ import annotations

import logging
from typing import List, Optional

from backend.app.config import Settings, get_settings

logger = logging.getLogger(__name__)


class FeatureDisabledError(PermissionError):
    """Raised when a required feature is not enabled.

    Attributes:
        feature_name: Name of the disabled feature
        flag_name: Environment variable name for the flag
    """

    def __init__(self, feature_name: str, flag_name: Optional[str] = None):
        self.feature_name = feature_name
        self.flag_name = flag_name or f"FF_{feature_name.upper()}_ENABLED"
        super().__init__(f"Feature '{feature_name}' is not enabled")


# =============================================================================
# Environment-based Feature Flags
# =============================================================================

def is_env_flag_enabled(flag_name: str, settings: Optional[Settings] = None) -> bool:
    """Check if an environment-based feature flag is enabled.

    Flags are configured via environment variables with the FF_ prefix and
    surfaced as attributes on Settings.

    Args:
        flag_name: Flag name (e.g., "ACCOUNT_LINKING", "GUEST_CHECKOUT")
        settings: Settings to read from; defaults to the process-wide instance

    Returns:
        True if the flag is enabled, False otherwise (unknown flags included)
    """
    settings = settings or get_settings()
    attr_name = f"FF_{flag_name.upper()}_ENABLED"
    return bool(getattr(settings, attr_name, False))


def require_env_flag(flag_name: str, settings: Optional[Settings] = None) -> None:
    """Require an environment-based feature flag to be enabled.

    Raises:
        FeatureDisabledError: If the flag is not enabled
    """
    if not is_env_flag_enabled(flag_name, settings):
        logger.info("feature_flag_disabled", extra={"flag": flag_name})
        raise FeatureDisabledError(flag_name)


def list_flags(settings: Optional[Settings] = None) -> List[str]:
    """Return a sorted list of all flags known to Settings."""
    settings = settings or get_settings()
    names = set()
    for attr in type(settings).model_fields:
        if attr.startswith("FF_") and attr.endswith("_ENABLED"):
            # FF_ACCOUNT_LINKING_ENABLED -> ACCOUNT_LINKING
            names.add(attr[3:-8])
    return sorted(names)


# =============================================================================
# Convenience functions
# =============================================================================

def is_account_linking_enabled(settings: Optional[Settings] = None) -> bool:
    """Check if OAuth account linking is enabled."""
    return is_env_flag_enabled("ACCOUNT_LINKING", settings)


def is_guest_checkout_enabled(settings: Optional[Settings] = None) -> bool:
    """Check if guest checkout tracking is enabled."""
    return is_env_flag_enabled("GUEST_CHECKOUT", settings)
