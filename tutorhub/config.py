from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    app_name: str = 'Tutorhub'
    app_env: str = 'local'
    app_timezone: str = 'Asia/Kolkata'
    database_url: str = 'sqlite:///./tutorhub.db'
    auth_secret: str = 'change-me'
    auth_token_ttl_hours: int = 168
    cron_secret: str = ''
    enable_scheduler: bool = True

    class_window_start: str = '06:00'
    class_window_end: str = '23:00'
    manual_schedule_tolerance_minutes: int = 30
    auto_schedule_tolerance_minutes: int = 60
    manual_probe_timeout_seconds: float = 5.0
    meeting_probe_timeout_seconds: float = 8.0
    meeting_probe_user_agent: str = 'Mozilla/5.0 (compatible; ClassLogger/1.0)'
    auto_detection_interval_minutes: int = 5
    stale_auto_session_hours: int = 3
    emergency_session_hours: int = 24
    emergency_duration_cap_minutes: int = 180

    class_reminder_lead_minutes: int = 60

    waitlist_default_expiry_days: int = 7
    waitlist_response_hours: int = 24
    waitlist_max_extend_hours: int = 168

    notification_webhook_url: str = ''
    notification_timeout_seconds: float = 10.0

    rate_limit_class_actions_per_minute: int = 30
    rate_limit_booking_per_minute: int = 10

    db_slow_query_ms: int = 100
    metrics_slow_ms: int = 200


settings = Settings()
