"""
Language map resolution.

A language map is a mapping of locale tag to display string, e.g.
``{"en-US": "completed", "fr-FR": "terminé"}``. Resolution order:

  1. exact match on the requested locale
  2. variant of the requested base language: the bare base ("en"), then the
     regional preferences below, then the first "<base>-*" key in map order
  3. steps 1-2 again with the configured default locale
  4. the first string value in map order
  5. "undefined" when the map is empty, not a mapping, or holds no strings

Entries whose value is not a string are skipped at every step.
"""

import logging
from collections.abc import Mapping
from typing import Any, Optional

from .config import configuration

logger = logging.getLogger(__name__)

UNDEFINED = "undefined"

REGIONAL_PREFERENCES = {"en": ("en-CA", "en-US", "en-GB"), "fr": ("fr-CA", "fr-FR")}


def _requested_locale(locale: Optional[str]) -> str:
    if locale:
        return str(locale)
    config = configuration()
    if config.default_locale:
        return str(config.default_locale)
    try:
        i18n = config.i18n_locale() if config.i18n_locale else None
    except Exception as e:
        logger.warning(f"Locale provider failed, ignoring it: {e}")
        i18n = None
    return str(i18n) if i18n else ""


def _exact(lang_map: Mapping, locale: str) -> Optional[str]:
    value = lang_map.get(locale)
    return value if isinstance(value, str) else None


def find_variant(lang_map: Mapping, locale: str) -> Optional[str]:
    base = locale.split("-")[0]
    if not base:
        return None
    value = _exact(lang_map, base)
    if value is not None:
        return value
    for tag in REGIONAL_PREFERENCES.get(base, ()):
        value = _exact(lang_map, tag)
        if value is not None:
            return value
    prefix = f"{base}-"
    for tag, value in lang_map.items():
        if isinstance(tag, str) and tag.startswith(prefix) and isinstance(value, str):
            return value
    return None


def get_localized_value(lang_map: Any, locale: Optional[str] = None) -> str:
    """Resolve the best string in ``lang_map`` for ``locale``. Never raises."""
    if not isinstance(lang_map, Mapping) or not lang_map:
        return UNDEFINED
    locale = _requested_locale(locale)
    value = _exact(lang_map, locale)
    if value is None:
        value = find_variant(lang_map, locale)
    if value is not None:
        return value
    default_locale = str(configuration().default_locale or "")
    if default_locale and default_locale != locale:
        value = _exact(lang_map, default_locale)
        if value is None:
            value = find_variant(lang_map, default_locale)
        if value is not None:
            return value
    return next((v for v in lang_map.values() if isinstance(v, str)), UNDEFINED)


class LocalizedMixin:
    """Adds ``localize(attr, locale)`` to model nodes that carry language maps."""

    def localize(self, attribute: str, locale: Optional[str] = None) -> str:
        return get_localized_value(getattr(self, attribute, None), locale)
