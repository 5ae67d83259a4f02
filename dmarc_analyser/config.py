"""
Configuration module for DMARC Analyser.

Loads settings from environment variables with sensible defaults.
"""

import os


class Config:
    """Base configuration shared by all environments."""

    # Security
    SECRET_KEY: str = os.environ.get("SECRET_KEY", "dev-secret-change-me")
    # Key material for encrypting third-party secrets at rest (Gemini keys,
    # Gmail tokens).  Falls back to SECRET_KEY when unset.
    ENCRYPTION_KEY: str | None = os.environ.get("ENCRYPTION_KEY")

    # Database
    SQLALCHEMY_DATABASE_URI: str = os.environ.get(
        "DATABASE_URL",
        "sqlite:///dmarc_analyser.db",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS: bool = False
    SQLALCHEMY_ENGINE_OPTIONS: dict = {
        "connect_args": {"timeout": 30},
    }

    # Session hardening
    SESSION_COOKIE_HTTPONLY: bool = True
    SESSION_COOKIE_SAMESITE: str = "Lax"
    SESSION_COOKIE_SECURE: bool = os.environ.get("SESSION_COOKIE_SECURE", "False").lower() == "true"

    # Number of trusted reverse proxies in front of the app.  When set, the
    # app is wrapped in ProxyFix so remote_addr comes from X-Forwarded-For.
    PROXY_FIX_HOPS: int = int(os.environ.get("PROXY_FIX_HOPS", "0"))

    # Upload / payload limits (compressed aggregate reports can be large)
    MAX_CONTENT_LENGTH: int = 10 * 1024 * 1024  # 10 MB

    # CSRF protection (Flask-WTF).  JSON blueprints are exempted in the factory.
    WTF_CSRF_ENABLED: bool = True

    # Application-level defaults
    ITEMS_PER_PAGE: int = 25
    APP_BASE_URL: str = os.environ.get("APP_BASE_URL", "http://localhost:5000")
    APP_NAME: str = "DMARC Analyser"

    # DNS
    DNS_NAMESERVERS: list[str] = [
        ns.strip()
        for ns in os.environ.get("DNS_NAMESERVERS", "1.1.1.1,8.8.8.8").split(",")
        if ns.strip()
    ]
    DNS_TIMEOUT: float = float(os.environ.get("DNS_TIMEOUT", "5.0"))
    DNS_RETRIES: int = int(os.environ.get("DNS_RETRIES", "2"))

    # Billing (Stripe).  SaaS mode is enabled only when the secret key is set.
    STRIPE_SECRET_KEY: str | None = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET: str | None = os.environ.get("STRIPE_WEBHOOK_SECRET")
    STRIPE_BASE_PRICE_ID: str | None = os.environ.get("STRIPE_BASE_PRICE_ID")
    STRIPE_DOMAIN_PRICE_ID: str | None = os.environ.get("STRIPE_DOMAIN_PRICE_ID")

    # Gmail OAuth
    GMAIL_CLIENT_ID: str | None = os.environ.get("GMAIL_CLIENT_ID")
    GMAIL_CLIENT_SECRET: str | None = os.environ.get("GMAIL_CLIENT_SECRET")
    GMAIL_REDIRECT_URI: str | None = os.environ.get("GMAIL_REDIRECT_URI")

    # AI recommendations
    GEMINI_MODEL: str = os.environ.get("GEMINI_MODEL", "gemini-2.0-flash")

    # Outbound email.  When MAIL_API_URL is unset, messages are logged only.
    MAIL_API_URL: str | None = os.environ.get("MAIL_API_URL")
    MAIL_API_KEY: str | None = os.environ.get("MAIL_API_KEY")
    MAIL_FROM: str = os.environ.get("MAIL_FROM", "DMARC Analyser <noreply@localhost>")

    # Delay between ip-api.com requests during source enrichment (seconds).
    # ip-api.com allows 45 requests per minute on the free tier.
    IP_ENRICH_DELAY_SECONDS: float = float(os.environ.get("IP_ENRICH_DELAY_SECONDS", "0.1"))
