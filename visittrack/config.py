import os


class Settings:
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./visittrack.db")
    app_host: str = os.getenv("APP_HOST", "0.0.0.0")
    app_port: int = int(os.getenv("APP_PORT", "8000"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    default_state: str = os.getenv("DEFAULT_STATE", "Kuala Lumpur")
    new_store_window_days: int = int(os.getenv("NEW_STORE_WINDOW_DAYS", "7"))
    import_row_issue_limit: int = int(os.getenv("IMPORT_ROW_ISSUE_LIMIT", "300"))
    demo_admin_email: str = os.getenv("DEMO_ADMIN_EMAIL", "admin@demo.com")
    demo_admin_password: str = os.getenv("DEMO_ADMIN_PASSWORD", "admin123")


settings = Settings()
