"""
GST Invoice Admin - GST Settings Service

Key/value store for the IRP connection, operational limits and company
profile. Rows live in gst_settings; keys with no active row fall back to the
process configuration (GST_API_* environment variables) and then to
built-in defaults.

Every read goes to the database so credential rotation takes effect on the
next call without a restart.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings as app_settings
from app.models.gst import GSTSetting
from app.schemas.einvoice import SECRET_MASK, GSTEnvironment, GSTSettings
from app.utils.error_handling import (
    ConfigurationException,
    ValidationException,
    validate_gstin,
)

logger = logging.getLogger(__name__)


# key -> description shown on the settings page
SETTING_DESCRIPTIONS: Dict[str, str] = {
    "api_base_url": "IRP API base URL",
    "client_id": "IRP client id (AppKey)",
    "client_secret": "IRP client secret",
    "api_username": "IRP API username",
    "api_password": "IRP API password",
    "environment": "sandbox or production",
    "retry_attempts": "Automatic retries for transient failures",
    "request_timeout": "Request timeout in seconds",
    "rate_limit_requests": "Maximum IRP calls per minute",
    "auto_submit_invoices": "Submit validated invoices automatically (1/0)",
    "webhook_url": "URL notified after IRN generation or cancellation",
    "custom_headers": "Extra HTTP headers as a JSON object",
    "company_gstin": "Seller GSTIN",
    "company_legal_name": "Seller legal name",
    "company_trade_name": "Seller trade name",
    "company_address1": "Seller address line 1",
    "company_address2": "Seller address line 2",
    "company_city": "Seller city",
    "company_state": "Seller state",
    "company_state_code": "Seller state code",
    "company_pincode": "Seller pincode",
    "company_phone": "Seller phone",
    "company_email": "Seller email",
}

REQUIRED_KEYS = ("api_base_url", "client_id", "api_username", "company_gstin")
SECRET_KEYS = frozenset({"client_secret", "api_password"})
INT_KEYS = frozenset({"retry_attempts", "rate_limit_requests"})
FLOAT_KEYS = frozenset({"request_timeout"})
BOOL_KEYS = frozenset({"auto_submit_invoices"})
JSON_KEYS = frozenset({"custom_headers"})

DEFAULTS: Dict[str, str] = {
    "environment": GSTEnvironment.SANDBOX.value,
    "retry_attempts": "3",
    "request_timeout": "30",
    "rate_limit_requests": "50",
    "auto_submit_invoices": "0",
    "custom_headers": "{}",
}

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off", ""}


def _env_fallbacks() -> Dict[str, str]:
    values = {
        "api_base_url": app_settings.gst_api_base_url,
        "api_username": app_settings.gst_api_username,
        "api_password": app_settings.gst_api_password,
        "client_id": app_settings.gst_client_id,
        "client_secret": app_settings.gst_client_secret,
    }
    return {k: v for k, v in values.items() if v}


def encode_value(key: str, value: Any) -> str:
    """Encode a typed value into its stored string form."""
    if key in BOOL_KEYS:
        return "1" if bool(value) else "0"
    if key in JSON_KEYS:
        if isinstance(value, str):
            return value
        return json.dumps(dict(value), sort_keys=True)
    if isinstance(value, GSTEnvironment):
        return value.value
    return str(value).strip()


def decode_values(raw: Mapping[str, Optional[str]]) -> Dict[str, Any]:
    """
    Decode stored strings into GSTSettings field values.

    Raises:
        ValueError: if a stored value cannot be parsed
    """
    decoded: Dict[str, Any] = {}
    for key, value in raw.items():
        if key not in SETTING_DESCRIPTIONS or value is None:
            continue
        if key in BOOL_KEYS:
            lowered = value.strip().lower()
            if lowered in TRUE_VALUES:
                decoded[key] = True
            elif lowered in FALSE_VALUES:
                decoded[key] = False
            else:
                raise ValueError(f"{key}: expected 1/0, got {value!r}")
        elif key in INT_KEYS:
            decoded[key] = int(value.strip())
        elif key in FLOAT_KEYS:
            decoded[key] = float(value.strip())
        elif key in JSON_KEYS:
            parsed = json.loads(value) if value.strip() else {}
            if not isinstance(parsed, dict):
                raise ValueError(f"{key}: expected a JSON object")
            decoded[key] = {str(k): str(v) for k, v in parsed.items()}
        elif value.strip() == "":
            continue
        else:
            decoded[key] = value.strip()
    return decoded


class GSTSettingsService:
    """Service for the GST settings key/value store."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def _load_rows(self, db: AsyncSession, active_only: bool = True) -> List[GSTSetting]:
        query = select(GSTSetting).order_by(GSTSetting.setting_key)
        if active_only:
            query = query.where(GSTSetting.is_active == True)  # noqa: E712
        result = await db.execute(query)
        return list(result.scalars().all())

    async def _merged_raw(self, db: AsyncSession) -> Dict[str, Optional[str]]:
        merged: Dict[str, Optional[str]] = dict(DEFAULTS)
        merged.update(_env_fallbacks())
        for row in await self._load_rows(db):
            # A blank row does not hide the environment fallback
            if row.setting_value is None or row.setting_value.strip() == "":
                continue
            merged[row.setting_key] = row.setting_value
        return merged

    @staticmethod
    def _missing(raw: Mapping[str, Optional[str]]) -> List[str]:
        return [k for k in REQUIRED_KEYS if not (raw.get(k) or "").strip()]

    # ===========================================
    # READ
    # ===========================================

    async def get(self) -> GSTSettings:
        """
        Return the current effective settings.

        Raises:
            ConfigurationException: mandatory fields are missing or a stored
                value cannot be parsed
        """
        async with self.session_factory() as db:
            raw = await self._merged_raw(db)

        missing = self._missing(raw)
        if missing:
            raise ConfigurationException(
                "GST settings are incomplete. Please update GST settings.",
                missing_fields=missing,
            )

        try:
            return GSTSettings(**decode_values(raw))
        except (ValueError, PydanticValidationError) as e:
            logger.error(f"Stored GST settings are invalid: {e}")
            raise ConfigurationException(
                f"Stored GST settings are invalid: {e}",
            )

    async def get_masked(self) -> Dict[str, Any]:
        """
        Effective settings for display: never raises for incomplete
        configuration, secrets masked.
        """
        async with self.session_factory() as db:
            raw = await self._merged_raw(db)
            rows = await self._load_rows(db, active_only=False)

        view: Dict[str, Any] = {}
        for key in SETTING_DESCRIPTIONS:
            value = raw.get(key)
            if key in SECRET_KEYS:
                view[key] = SECRET_MASK if value else ""
            else:
                view[key] = value or ""

        return {
            "settings": view,
            "rows": [self._row_view(r) for r in rows],
            "configured": not self._missing(raw),
            "missing_fields": self._missing(raw),
        }

    async def get_raw(self) -> List[Dict[str, Any]]:
        """Stored rows with descriptions, secrets masked."""
        async with self.session_factory() as db:
            rows = await self._load_rows(db, active_only=False)
        return [self._row_view(r) for r in rows]

    @staticmethod
    def _row_view(row: GSTSetting) -> Dict[str, Any]:
        value = row.setting_value
        if row.setting_key in SECRET_KEYS and value:
            value = SECRET_MASK
        return {
            "key": row.setting_key,
            "value": value,
            "description": row.description,
            "is_active": row.is_active,
        }

    # ===========================================
    # WRITE
    # ===========================================

    def _clean_changes(self, changes: Mapping[str, Any]) -> Dict[str, str]:
        unknown = sorted(k for k in changes if k not in SETTING_DESCRIPTIONS)
        if unknown:
            raise ValidationException(
                f"Unknown GST setting(s): {', '.join(unknown)}",
                field=unknown[0],
                details={"unknown_keys": unknown},
            )

        cleaned: Dict[str, str] = {}
        for key, value in changes.items():
            if value is None:
                continue
            if key in SECRET_KEYS and value == SECRET_MASK:
                continue
            if key == "company_gstin":
                value = validate_gstin(str(value))
            cleaned[key] = encode_value(key, value)
        return cleaned

    async def update(self, changes: Mapping[str, Any]) -> GSTSettings:
        """
        Merge `changes` onto the stored settings and persist them.

        Validation runs on the merged result before anything is written, so
        a rejected update leaves the store untouched.

        Raises:
            InvalidGSTINException: GSTIN does not match the GSTIN pattern
            ValidationException: required fields missing or values invalid
        """
        cleaned = self._clean_changes(changes)

        async with self.session_factory() as db:
            merged = await self._merged_raw(db)
            merged.update(cleaned)

            missing = self._missing(merged)
            if missing:
                raise ValidationException(
                    f"Required GST settings missing: {', '.join(missing)}",
                    field=missing[0],
                    details={"missing_fields": missing},
                )

            try:
                result = GSTSettings(**decode_values(merged))
            except (ValueError, PydanticValidationError) as e:
                raise ValidationException(f"Invalid GST settings: {e}")

            if cleaned:
                existing = {
                    r.setting_key: r
                    for r in (
                        await db.execute(
                            select(GSTSetting).where(GSTSetting.setting_key.in_(list(cleaned)))
                        )
                    ).scalars().all()
                }
                for key, value in cleaned.items():
                    row = existing.get(key)
                    if row is None:
                        db.add(GSTSetting(
                            setting_key=key,
                            setting_value=value,
                            description=SETTING_DESCRIPTIONS[key],
                            is_active=True,
                        ))
                    else:
                        row.setting_value = value
                        row.is_active = True
                await db.commit()

        logger.info(f"GST settings updated: {', '.join(sorted(cleaned)) or 'no changes'}")
        return result
