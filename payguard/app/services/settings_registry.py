"""
Merchant authorisation settings.

The resource server resolves the authorisation setting of an entity from
this registry, keyed by the merchant id of the authenticated caller; request
bodies never carry settings. Populated at start-up from
PAYGUARD_AUTHORISATION_SETTINGS, a JSON object of merchant id to a list of
settings:

    {"6d8a4b2e-...": [{"authorisation_type": "payout", "number_of_authorisers": 2}],
     "*": [{"number_of_authorisers": 1}]}

The "*" entry applies to merchants with no settings of their own. A merchant
with no applicable setting at all gets one authoriser.
"""

import json
import logging
import os
import threading
from typing import Dict, List, Optional, Sequence

from pydantic import TypeAdapter, ValidationError

from payguard.app.errors import ConfigurationError
from payguard.app.models.approvals import AuthorisationSetting
from payguard.app.services.authorisation import amount_for, authorisation_type_for, select_setting

logger = logging.getLogger(__name__)

DEFAULT_MERCHANT_KEY = "*"

_settings_list = TypeAdapter(List[AuthorisationSetting])


class AuthorisationSettingsRegistry:
    """In-memory merchant id -> settings map."""

    def __init__(self):
        self._settings: Dict[str, List[AuthorisationSetting]] = {}
        self._lock = threading.Lock()

    def set(self, merchant_id: str, settings: Sequence[AuthorisationSetting]) -> None:
        with self._lock:
            self._settings[merchant_id] = list(settings)
        logger.info("Registered %d authorisation settings for merchant %s", len(settings), merchant_id)

    def remove(self, merchant_id: str) -> None:
        with self._lock:
            self._settings.pop(merchant_id, None)

    def clear(self) -> None:
        with self._lock:
            self._settings.clear()

    def settings_for(self, merchant_id: Optional[str]) -> List[AuthorisationSetting]:
        with self._lock:
            if merchant_id and merchant_id in self._settings:
                return list(self._settings[merchant_id])
            return list(self._settings.get(DEFAULT_MERCHANT_KEY, []))

    def resolve(self, merchant_id: Optional[str], entity) -> AuthorisationSetting:
        """The setting that applies to an entity of a merchant."""
        setting = select_setting(
            self.settings_for(merchant_id),
            authorisation_type_for(entity),
            amount_for(entity),
        )
        return setting or AuthorisationSetting()

    def load_json(self, raw: str) -> int:
        """
        Register the settings of every merchant in a JSON object.

        Returns:
            Number of merchants registered

        Raises:
            ConfigurationError: If the JSON or a setting is invalid
        """
        try:
            entries = json.loads(raw)
        except json.JSONDecodeError:
            raise ConfigurationError("Authorisation settings configuration is not valid JSON.")
        if not isinstance(entries, dict):
            raise ConfigurationError("Authorisation settings configuration must be a JSON object.")

        for merchant_id, settings in entries.items():
            try:
                self.set(str(merchant_id), _settings_list.validate_python(settings))
            except ValidationError as e:
                fields = ", ".join(".".join(str(p) for p in err["loc"]) or "entry" for err in e.errors())
                raise ConfigurationError(f"Invalid authorisation settings for merchant {merchant_id}: {fields}")
        return len(entries)

    def load_from_env(self) -> int:
        raw = os.getenv("PAYGUARD_AUTHORISATION_SETTINGS")
        if not raw:
            return 0
        return self.load_json(raw)


_registry = AuthorisationSettingsRegistry()


def get_settings_registry() -> AuthorisationSettingsRegistry:
    """Get the global authorisation settings registry instance."""
    return _registry
