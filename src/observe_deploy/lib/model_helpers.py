from pydantic_settings import BaseSettings, SettingsConfigDict


class ObserveBaseSettings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=False)


def octal_mode(mode: str | int) -> int:
    """Convert a permission specifier such as "0644" or 644 into its integer value."""
    return int(str(mode), 8)
