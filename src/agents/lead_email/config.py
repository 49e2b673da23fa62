"""Environment configuration for the lead email Lambda."""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from src.common.errors import ConfigurationError

from .models import ShopProfile
from .text_utils import digits_only

DEFAULT_INLINE_MAX_BYTES = 4 * 1024 * 1024
DEFAULT_INLINE_TOTAL_MAX_BYTES = 8 * 1024 * 1024

_REQUIRED = ("OPENAI_API_KEY", "LEAD_TO_EMAIL", "LEAD_FROM_EMAIL", "LEAD_DEDUPE_TABLE_NAME")


def _optional(env: Mapping[str, str], key: str) -> Optional[str]:
    value = (env.get(key) or "").strip()
    return value or None


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from e
    if value < 0:
        raise ConfigurationError(f"{key} must not be negative")
    return value


@dataclass(frozen=True)
class LeadEmailSettings:
    """Settings read once per cold start."""

    openai_api_key: str
    lead_to_email: str
    lead_from_email: str
    dedupe_table_name: str

    attribution_table_name: Optional[str] = None
    message_link_table_name: Optional[str] = None
    message_link_base_url: str = ""
    message_link_ttl_days: int = 14
    attribution_ttl_days: int = 180

    retry_scheduler_role_arn: Optional[str] = None
    retry_target_arn: Optional[str] = None
    retry_schedule_group: str = "default"

    bedrock_model_id: Optional[str] = None
    bedrock_inference_profile_arn: Optional[str] = None
    aws_region: str = "us-east-1"

    thread_id_prefix: str = "cthr_"
    assistant_name: str = "Assistant"

    idle_threshold_seconds: int = 300
    retry_safety_margin_seconds: int = 5
    lease_seconds: int = 120
    error_cooldown_seconds: int = 60
    dedupe_ttl_days: int = 30

    inline_attachment_max_bytes: int = DEFAULT_INLINE_MAX_BYTES
    inline_attachment_total_max_bytes: int = DEFAULT_INLINE_TOTAL_MAX_BYTES
    attachment_fetch_timeout_seconds: int = 8

    shop_name: str = "Our shop"
    shop_phone_display: str = ""
    shop_address: str = ""
    site_label: str = ""

    @property
    def shop(self) -> ShopProfile:
        return ShopProfile(
            name=self.shop_name,
            phone_display=self.shop_phone_display,
            phone_digits=digits_only(self.shop_phone_display),
            address=self.shop_address,
            site_label=self.site_label,
        )

    @property
    def summarizer_configured(self) -> bool:
        return bool(self.bedrock_model_id or self.bedrock_inference_profile_arn)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "LeadEmailSettings":
        """Build settings from environment variables.

        Raises:
            ConfigurationError: A required variable is missing or a number is invalid.
        """
        env = os.environ if environ is None else environ
        missing = [key for key in _REQUIRED if not (env.get(key) or "").strip()]
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

        return cls(
            openai_api_key=env["OPENAI_API_KEY"].strip(),
            lead_to_email=env["LEAD_TO_EMAIL"].strip(),
            lead_from_email=env["LEAD_FROM_EMAIL"].strip(),
            dedupe_table_name=env["LEAD_DEDUPE_TABLE_NAME"].strip(),
            attribution_table_name=_optional(env, "LEAD_ATTRIBUTION_TABLE_NAME"),
            message_link_table_name=_optional(env, "MESSAGE_LINK_TOKEN_TABLE_NAME"),
            message_link_base_url=_optional(env, "MESSAGE_LINK_BASE_URL") or "",
            message_link_ttl_days=_int(env, "MESSAGE_LINK_TTL_DAYS", 14),
            attribution_ttl_days=_int(env, "LEAD_ATTRIBUTION_TTL_DAYS", 180),
            retry_scheduler_role_arn=_optional(env, "LEAD_RETRY_SCHEDULER_ROLE_ARN"),
            retry_target_arn=_optional(env, "LEAD_RETRY_TARGET_ARN"),
            retry_schedule_group=_optional(env, "LEAD_RETRY_SCHEDULE_GROUP") or "default",
            bedrock_model_id=_optional(env, "BEDROCK_MODEL_ID"),
            bedrock_inference_profile_arn=_optional(env, "BEDROCK_IP_ARN"),
            aws_region=_optional(env, "AWS_REGION") or "us-east-1",
            thread_id_prefix=_optional(env, "THREAD_ID_PREFIX") or "cthr_",
            assistant_name=_optional(env, "LEAD_ASSISTANT_NAME") or "Assistant",
            idle_threshold_seconds=_int(env, "LEAD_IDLE_THRESHOLD_SECONDS", 300),
            retry_safety_margin_seconds=_int(env, "LEAD_RETRY_SAFETY_MARGIN_SECONDS", 5),
            lease_seconds=_int(env, "LEAD_LEASE_SECONDS", 120),
            error_cooldown_seconds=_int(env, "LEAD_ERROR_COOLDOWN_SECONDS", 60),
            dedupe_ttl_days=_int(env, "LEAD_DEDUPE_TTL_DAYS", 30),
            inline_attachment_max_bytes=_int(
                env, "LEAD_INLINE_ATTACHMENT_MAX_BYTES", DEFAULT_INLINE_MAX_BYTES
            ),
            inline_attachment_total_max_bytes=_int(
                env, "LEAD_INLINE_ATTACHMENT_TOTAL_MAX_BYTES", DEFAULT_INLINE_TOTAL_MAX_BYTES
            ),
            attachment_fetch_timeout_seconds=_int(env, "LEAD_ATTACHMENT_FETCH_TIMEOUT_SECONDS", 8),
            shop_name=_optional(env, "SHOP_NAME") or "Our shop",
            shop_phone_display=_optional(env, "SHOP_PHONE_DISPLAY") or "",
            shop_address=_optional(env, "SHOP_ADDRESS") or "",
            site_label=_optional(env, "SITE_LABEL") or "",
        )
