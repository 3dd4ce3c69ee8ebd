from dynaconf import Dynaconf, Validator

settings = Dynaconf(
    settings_files=["settings.toml", ".secrets.toml"],
    environments=True,
    env_switcher="ENV_FOR_DYNACONF",
    envvar_prefix="EVENTFED",
    load_dotenv=True,
    validators=[
        Validator("BASE_URL", default="http://localhost:3000"),
        Validator("DATABASE_URL", default="sqlite+aiosqlite:///./eventfed.db"),
        Validator("SOFTWARE_NAME", default="eventfed"),
        Validator("SOFTWARE_VERSION", default="0.1.0"),
        Validator("PRODUCTION", default=False, is_type_of=bool),
        Validator("SKIP_SIGNATURE_VERIFY", default=False, is_type_of=bool),
        Validator("FEDERATION_TIMEOUT", default=8.0),
        Validator("USER_AGENT", default="eventfed/0.1 (+https://github.com/eventfed)"),
        Validator("OUTBOX_PAGE_SIZE", default=20, gt=0),
        Validator("REMOTE_OUTBOX_MAX_PAGES", default=10, gt=0),
        Validator("SIGNATURE_MAX_AGE", default=43200, gt=0),
        Validator("REMOTE_RAW_JSON_LIMIT", default=100_000, gt=0),
        Validator("DISCOVERY_MIN_AGE_HOURS", default=24),
        Validator("DISCOVERY_MAX_ACCOUNTS", default=300),
        Validator("DISCOVERY_CONCURRENCY", default=5, gt=0),
        Validator("REFRESH_INTERVAL_SECONDS", default=3600, gt=0),
        Validator("REFRESH_BATCH_SIZE", default=20, gt=0),
        Validator("REFRESH_MAX_AGE_HOURS", default=24),
        Validator("REFRESH_CONCURRENCY", default=3, gt=0),
    ],
)


def is_production() -> bool:
    return bool(settings.production)
