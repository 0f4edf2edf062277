import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "propertyguard.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Session cookie name for our auth token
    AUTH_COOKIE_NAME = "propertyguard_session"
    SESSION_LIFETIME_SECONDS = 8 * 60 * 60
    IDLE_TIMEOUT_SECONDS = 20 * 60

    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "false").lower() == "true"

    BCRYPT_ROUNDS = _env_int("BCRYPT_ROUNDS", 12)
    PASSWORD_MIN_LEN = 8

    # Brute-force protection
    LOGIN_FAILURE_WINDOW_SECONDS = 15 * 60
    LOGIN_ALERT_THRESHOLD = 3
    ACCOUNT_LOCK_THRESHOLD = 5
    ACCOUNT_LOCK_SECONDS = 30 * 60
    IDENTIFIER_COOLDOWN_THRESHOLD = 10
    LOGIN_ATTEMPT_RETENTION_DAYS = 30
    ROOT_ADMIN_LOCK_LINK_TTL_SECONDS = 24 * 60 * 60
    UNLOCK_LINK_TTL_DAYS = 10 * 365

    # OTP challenges + CAPTCHA escalation
    OTP_LENGTH = 6
    OTP_TTL_SECONDS = 10 * 60
    OTP_MAX_ATTEMPTS = 3
    OTP_TRACKING_WINDOW_SECONDS = 10 * 60
    OTP_CAPTCHA_REQUEST_THRESHOLD = 3
    OTP_CAPTCHA_FAILURE_THRESHOLD = 3
    OTP_LOCKOUT_THRESHOLD = 5
    OTP_LOCKOUT_WINDOW_SECONDS = 15 * 60
    OTP_LOCKOUT_SECONDS = 15 * 60
    PASSWORD_RESET_GRANT_SECONDS = 10 * 60
    SIGNUP_VERIFIED_TTL_SECONDS = 30 * 60

    RECAPTCHA_SECRET_KEY = os.getenv("RECAPTCHA_SECRET_KEY")
    RECAPTCHA_VERIFY_URL = os.getenv(
        "RECAPTCHA_VERIFY_URL", "https://www.google.com/recaptcha/api/siteverify"
    )
    CAPTCHA_TIMEOUT_SECONDS = _env_int("CAPTCHA_TIMEOUT_SECONDS", 5)

    # CSRF
    CSRF_COOKIE_NAME = "csrf_token"
    CSRF_HEADER_NAME = "X-CSRF-Token"
    CSRF_TTL_SECONDS = 60 * 60

    # Fixed-window rate limits per action: (window_seconds, max_requests)
    RATE_LIMITS = {
        "signin": (60, 10),
        "signup": (60, 3),
        "otp_send": (60, 3),
        "otp_verify": (60, 5),
        "forgot_password": (15 * 60, 3),
        "otp_captcha": (60, 15),
        "security_link": (60, 10),
    }

    # Referral fraud scoring (heuristic, tune against labelled data)
    FRAUD_VELOCITY_WINDOW_MINUTES = 30
    FRAUD_VELOCITY_HARD_LIMIT = 5
    FRAUD_VELOCITY_MIDPOINT = 3
    FRAUD_VELOCITY_STEEPNESS = 1.5
    FRAUD_WEIGHTS = {
        "velocity": 0.5,
        "entropy": 0.2,
        "email_pattern": 0.15,
        "metadata_mismatch": 0.15,
    }
    FRAUD_THRESHOLD = 0.65
    FRAUD_ENTROPY_HIGH = 3.8
    FRAUD_ENTROPY_MEDIUM = 3.0

    # Volatile stores: in-memory unless REDIS_URL points at a shared cache
    REDIS_URL = os.getenv("REDIS_URL")

    # Background sweeps
    SWEEPS_ENABLED = os.getenv("SWEEPS_ENABLED", "true").lower() == "true"
    OTP_SWEEP_SECONDS = 5 * 60
    CSRF_SWEEP_SECONDS = 10 * 60
    RATE_SWEEP_SECONDS = 5 * 60
    ATTEMPT_PURGE_SECONDS = 60 * 60

    # Links in security emails
    CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:5173")

    # Email (SMTP)
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL")
    SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"
    SMTP_TIMEOUT_SECONDS = 10

    DEBUG = False
