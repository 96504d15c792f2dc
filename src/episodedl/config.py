"""
Runtime configuration, read once at startup and passed around explicitly.
"""

import os
from dataclasses import dataclass
from enum import Enum

from dotenv import find_dotenv, load_dotenv

from .scoring import ScoringPolicy


class MessageTunnel(str, Enum):
    TELEGRAM = "telegram"
    WHATSAPP = "whatsapp"
    NONE = "none"


@dataclass
class Config:
    opensubtitles_api_key: str = ""
    opensubtitles_username: str = ""
    opensubtitles_password: str = ""
    opensubtitles_user_agent: str = "episodedl/0.1.0"

    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"

    message_tunnel: MessageTunnel = MessageTunnel.TELEGRAM
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    whatsapp_token: str = ""
    whatsapp_phone_number_id: str = ""
    whatsapp_recipient: str = ""

    scoring_policy: ScoringPolicy = ScoringPolicy.QUALITY
    subtitle_language: str = "he"
    fallback_language: str = "en"

    compression_threshold_mb: float = 110
    notify_step: int = 20
    send_retries: int = 3
    retry_delay: float = 5.0
    # time given to the chat channel to deliver the last message of a failed run
    failure_grace: float = 10.0

    @classmethod
    def from_env(cls, env=None):
        """Build a config from the environment (and a .env file, if present)."""
        if env is None:
            load_dotenv(find_dotenv(usecwd=True))
            env = os.environ

        def get(key, default=""):
            value = env.get(key)
            return default if value is None or value == "" else value

        try:
            tunnel = MessageTunnel(get("MESSAGE_TUNNEL", "telegram").lower())
        except ValueError:
            raise ValueError(f"Unknown MESSAGE_TUNNEL: {env.get('MESSAGE_TUNNEL')}")

        try:
            policy = ScoringPolicy(get("EPISODEDL_SCORING", "quality").lower())
        except ValueError:
            raise ValueError(
                f"Unknown EPISODEDL_SCORING: {env.get('EPISODEDL_SCORING')}"
            )

        return cls(
            opensubtitles_api_key=get("OS_API_KEY"),
            opensubtitles_username=get("OS_API_USER"),
            opensubtitles_password=get("OS_API_PASS"),
            opensubtitles_user_agent=get("OS_USER_AGENT", cls.opensubtitles_user_agent),
            openai_api_key=get("OPENAI_API_KEY"),
            openai_model=get("OPENAI_MODEL", cls.openai_model),
            message_tunnel=tunnel,
            telegram_bot_token=get("TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=get("TELEGRAM_CHAT_ID"),
            whatsapp_token=get("WHATSAPP_TOKEN"),
            whatsapp_phone_number_id=get("WHATSAPP_PHONE_NUMBER_ID"),
            whatsapp_recipient=get("MY_WHATSAPP_NUMBER"),
            scoring_policy=policy,
            subtitle_language=get("SUBTITLE_LANGUAGE", cls.subtitle_language),
            fallback_language=get("FALLBACK_LANGUAGE", cls.fallback_language),
            compression_threshold_mb=float(
                get("COMPRESSION_THRESHOLD_MB", cls.compression_threshold_mb)
            ),
            notify_step=int(get("NOTIFY_STEP", cls.notify_step)),
            send_retries=int(get("SEND_RETRIES", cls.send_retries)),
            retry_delay=float(get("RETRY_DELAY", cls.retry_delay)),
            failure_grace=float(get("FAILURE_GRACE", cls.failure_grace)),
        )
