"""
chain.py — Provider chain construction.

A provider chain is the ordered list of backends the orchestrator walks for
one channel. It is a pure function of configuration, built once at startup
and injected into the orchestrator; changing providers requires a restart.

═══════════════════════════════════════════════════════════════════════════
CONSTRUCTION RULES
═══════════════════════════════════════════════════════════════════════════

    1. Primary (EMAIL_PROVIDER / SMS_PROVIDER / PUSH_PROVIDER) goes first,
       but only when every required credential field is set.
    2. Fallbacks (*_FALLBACK_PROVIDERS, comma list) follow in listed order,
       each only when its credentials are set and it is not already present.
    3. No usable primary → the fallback list doubles as the primary
       candidate list, so fallback-only configurations still deliver.
    4. Unknown provider names are logged and skipped.

An empty chain is legal: the orchestrator then performs a mock delivery.

    Channel   Provider keys
    ───────   ─────────────────────────────────────────────────
    email     sendgrid, mailgun, postmark, smtp, gmail, ses
    sms       http, twilio, nexmo, africastalking, clickatell, sns
    push      fcm, webhook
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import httpx

from backend.app.core.config import Settings
from backend.app.notifications.backends.aws_providers import SesBackend, SnsBackend, make_aws_client
from backend.app.notifications.backends.base import DeliveryBackend
from backend.app.notifications.backends.email_providers import (
    GmailBackend,
    MailgunBackend,
    PostmarkBackend,
    SendGridBackend,
    SmtpBackend,
)
from backend.app.notifications.backends.push_providers import FcmBackend, WebhookPushBackend
from backend.app.notifications.backends.sms_providers import (
    AfricasTalkingBackend,
    ClickatellBackend,
    HttpSmsBackend,
    NexmoBackend,
    TwilioBackend,
)
from backend.app.notifications.models import Channel

logger = logging.getLogger(__name__)

BackendFactory = Callable[[Settings, httpx.AsyncClient], DeliveryBackend]


# ═══════════════════════════════════════════════════════════════════════════
# Provider Registry
# ═══════════════════════════════════════════════════════════════════════════

def _aws_client(service: str, cfg: Settings):
    return make_aws_client(
        service, cfg.AWS_ACCESS_KEY_ID, cfg.AWS_SECRET_ACCESS_KEY, cfg.AWS_REGION,
        timeout_seconds=cfg.BACKEND_SEND_TIMEOUT_SECONDS,
    )


@dataclass(frozen=True)
class ProviderSpec:
    """How to build one provider and which settings it cannot run without."""
    key: str
    required: Tuple[str, ...]
    factory: BackendFactory

    def missing_credentials(self, cfg: Settings) -> List[str]:
        return [name for name in self.required if not getattr(cfg, name, None)]


PROVIDER_REGISTRY: Dict[Channel, Dict[str, ProviderSpec]] = {
    Channel.EMAIL: {
        "sendgrid": ProviderSpec(
            "sendgrid",
            ("SENDGRID_API_KEY", "SENDGRID_FROM"),
            lambda cfg, client: SendGridBackend(client, cfg.SENDGRID_API_KEY, cfg.SENDGRID_FROM),
        ),
        "mailgun": ProviderSpec(
            "mailgun",
            ("MAILGUN_API_KEY", "MAILGUN_DOMAIN", "MAILGUN_FROM"),
            lambda cfg, client: MailgunBackend(
                client, cfg.MAILGUN_API_KEY, cfg.MAILGUN_DOMAIN, cfg.MAILGUN_FROM,
            ),
        ),
        "postmark": ProviderSpec(
            "postmark",
            ("POSTMARK_SERVER_TOKEN", "POSTMARK_FROM"),
            lambda cfg, client: PostmarkBackend(client, cfg.POSTMARK_SERVER_TOKEN, cfg.POSTMARK_FROM),
        ),
        "smtp": ProviderSpec(
            "smtp",
            ("SMTP_HOST", "SMTP_USERNAME", "SMTP_PASSWORD"),
            lambda cfg, client: SmtpBackend(
                cfg.SMTP_HOST, cfg.SMTP_PORT, cfg.SMTP_USERNAME, cfg.SMTP_PASSWORD, cfg.SMTP_FROM,
                timeout_seconds=cfg.BACKEND_SEND_TIMEOUT_SECONDS,
            ),
        ),
        "gmail": ProviderSpec(
            "gmail",
            ("GMAIL_FROM", "GMAIL_APP_PASSWORD"),
            lambda cfg, client: GmailBackend(
                cfg.GMAIL_FROM, cfg.GMAIL_APP_PASSWORD,
                timeout_seconds=cfg.BACKEND_SEND_TIMEOUT_SECONDS,
            ),
        ),
        "ses": ProviderSpec(
            "ses",
            ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "SES_FROM"),
            lambda cfg, client: SesBackend(
                _aws_client("ses", cfg), cfg.SES_FROM, cfg.AWS_REGION,
            ),
        ),
    },
    Channel.SMS: {
        "http": ProviderSpec(
            "http",
            ("SMS_URL", "SMS_API_KEY"),
            lambda cfg, client: HttpSmsBackend(
                client, cfg.SMS_URL, cfg.SMS_API_KEY,
                partner_id=cfg.SMS_PARTNER_ID,
                shortcode=cfg.SMS_SHORTCODE,
                pass_type=cfg.SMS_PASS_TYPE,
            ),
        ),
        "twilio": ProviderSpec(
            "twilio",
            ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_FROM_NUMBER"),
            lambda cfg, client: TwilioBackend(
                client, cfg.TWILIO_ACCOUNT_SID, cfg.TWILIO_AUTH_TOKEN, cfg.TWILIO_FROM_NUMBER,
            ),
        ),
        "nexmo": ProviderSpec(
            "nexmo",
            ("NEXMO_API_KEY", "NEXMO_API_SECRET", "NEXMO_FROM"),
            lambda cfg, client: NexmoBackend(
                client, cfg.NEXMO_API_KEY, cfg.NEXMO_API_SECRET, cfg.NEXMO_FROM,
            ),
        ),
        "africastalking": ProviderSpec(
            "africastalking",
            ("AFRICASTALKING_API_KEY", "AFRICASTALKING_USERNAME"),
            lambda cfg, client: AfricasTalkingBackend(
                client, cfg.AFRICASTALKING_API_KEY, cfg.AFRICASTALKING_USERNAME,
                cfg.AFRICASTALKING_URL,
            ),
        ),
        "clickatell": ProviderSpec(
            "clickatell",
            ("CLICKATELL_API_KEY",),
            lambda cfg, client: ClickatellBackend(client, cfg.CLICKATELL_API_KEY),
        ),
        "sns": ProviderSpec(
            "sns",
            ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY"),
            lambda cfg, client: SnsBackend(
                _aws_client("sns", cfg), cfg.AWS_REGION, sender_id=cfg.SNS_SENDER_ID,
            ),
        ),
    },
    Channel.PUSH: {
        "fcm": ProviderSpec(
            "fcm",
            ("FCM_SERVER_KEY",),
            lambda cfg, client: FcmBackend(client, cfg.FCM_SERVER_KEY),
        ),
        "webhook": ProviderSpec(
            "webhook",
            ("PUSH_WEBHOOK_URL",),
            lambda cfg, client: WebhookPushBackend(
                client, cfg.PUSH_WEBHOOK_URL, cfg.PUSH_WEBHOOK_TOKEN,
            ),
        ),
    },
}


def channel_provider_config(channel: Channel, cfg: Settings) -> Tuple[Optional[str], List[str]]:
    """(primary, fallbacks) provider keys configured for a channel."""
    if channel == Channel.EMAIL:
        primary, fallbacks = cfg.EMAIL_PROVIDER, cfg.email_fallbacks
    elif channel == Channel.SMS:
        primary, fallbacks = cfg.SMS_PROVIDER, cfg.sms_fallbacks
    else:
        primary, fallbacks = cfg.PUSH_PROVIDER, cfg.push_fallbacks
    return (primary.strip().lower() if primary else None), fallbacks


# ═══════════════════════════════════════════════════════════════════════════
# Provider Chain
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ProviderChain:
    """Immutable, ordered backends for one channel."""
    channel: Channel
    backends: Tuple[DeliveryBackend, ...] = ()

    @property
    def primary(self) -> Optional[DeliveryBackend]:
        return self.backends[0] if self.backends else None

    @property
    def fallbacks(self) -> Tuple[DeliveryBackend, ...]:
        return self.backends[1:]

    @property
    def names(self) -> List[str]:
        return [b.name for b in self.backends]

    @property
    def is_mock(self) -> bool:
        return not self.backends

    def __len__(self) -> int:
        return len(self.backends)

    def __iter__(self) -> Iterator[DeliveryBackend]:
        return iter(self.backends)


def build_chain(
    channel: Channel,
    cfg: Settings,
    client: httpx.AsyncClient,
    *,
    primary: Optional[str] = None,
    fallbacks: Optional[Sequence[str]] = None,
) -> ProviderChain:
    """
    Build the provider chain for one channel.

    Parameters
    ----------
    channel : Channel
    cfg : Settings
        Credential source. Also supplies primary / fallbacks when they
        are not passed explicitly.
    client : httpx.AsyncClient
        Shared client handed to every HTTP backend.
    primary, fallbacks : optional
        Override the provider keys read from settings.

    Returns
    -------
    ProviderChain
    """
    cfg_primary, cfg_fallbacks = channel_provider_config(channel, cfg)
    if primary is None and fallbacks is None:
        primary, fallbacks = cfg_primary, cfg_fallbacks
    fallbacks = [f.strip().lower() for f in (fallbacks or []) if f and f.strip()]
    registry = PROVIDER_REGISTRY[channel]

    chain: List[DeliveryBackend] = []
    included: List[str] = []

    def _try_add(key: str, role: str) -> None:
        if key in included:
            return
        spec = registry.get(key)
        if spec is None:
            logger.warning(
                "[%s] Unknown %s provider '%s' — skipped (known: %s)",
                channel.value.upper(), role, key, ", ".join(registry),
            )
            return
        missing = spec.missing_credentials(cfg)
        if missing:
            logger.info(
                "[%s] %s provider '%s' skipped: missing %s",
                channel.value.upper(), role.capitalize(), key, ", ".join(missing),
            )
            return
        chain.append(spec.factory(cfg, client))
        included.append(key)

    if primary:
        _try_add(primary.strip().lower(), "primary")

    # Without a usable primary, the first credentialed fallback takes its place
    for key in fallbacks:
        _try_add(key, "fallback" if chain else "primary")

    result = ProviderChain(channel=channel, backends=tuple(chain))
    if result.is_mock:
        logger.info(
            "[%s] No providers configured — mock delivery mode",
            channel.value.upper(),
            extra={"channel": channel.value, "chain_size": 0},
        )
    else:
        logger.info(
            "[%s] Initialized with %d provider(s): %s",
            channel.value.upper(), len(result), " → ".join(result.names),
            extra={"channel": channel.value, "chain_size": len(result)},
        )
    return result


def build_chains(cfg: Settings, client: httpx.AsyncClient) -> Dict[Channel, ProviderChain]:
    """One chain per channel, built from settings."""
    return {channel: build_chain(channel, cfg, client) for channel in Channel}
