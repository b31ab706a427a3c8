import os


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///procureflow.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_ENABLED = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "AED")
    # "all_required" or "any_one"; applies to rules with requires_sequential = False
    PARALLEL_APPROVAL_POLICY = os.environ.get("PARALLEL_APPROVAL_POLICY", "all_required")
    REQUIRE_REJECTION_REASON = os.environ.get("REQUIRE_REJECTION_REASON", "true").lower() in {"1", "true", "yes"}
    ESCALATION_NOTIFY_ENABLED = os.environ.get("ESCALATION_NOTIFY_ENABLED", "true").lower() in {"1", "true", "yes"}
    ESCALATION_BATCH_SIZE = int(os.environ.get("ESCALATION_BATCH_SIZE", 500))
    MAIL_SERVER = os.environ.get("MAIL_SERVER")
    MAIL_PORT = int(os.environ.get("MAIL_PORT", 587))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_USE_TLS = os.environ.get("MAIL_USE_TLS", "true").lower() in {"1", "true", "yes"}
    MAIL_DEFAULT_SENDER = os.environ.get("MAIL_DEFAULT_SENDER", "approvals@procureflow.local")


class DevelopmentConfig(Config):
    DEBUG = True


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    WTF_CSRF_ENABLED = False
    MAIL_SUPPRESS_SEND = True
    ESCALATION_NOTIFY_ENABLED = False
    PARALLEL_APPROVAL_POLICY = "all_required"
    REQUIRE_REJECTION_REASON = True


class ProductionConfig(Config):
    DEBUG = False


config_by_name = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
}
