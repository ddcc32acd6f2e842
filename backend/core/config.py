"""
Settings for the API and the extraction worker.

Values come from ``config/settings.yaml``; ``${VAR}`` and ``${VAR:-default}``
placeholders in that file are expanded from the environment (including a
project-level ``.env``) before validation.
"""

import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic_settings import BaseSettings

project_root = Path(__file__).parent.parent.parent
load_dotenv(project_root / ".env")

ENV_PLACEHOLDER = re.compile(r'\$\{(?P<name>[^}:]+)(?::-(?P<default>[^}]*))?\}')


def expand_env(value: Any) -> Any:
    """Expand environment placeholders in every string of a parsed YAML tree."""
    if isinstance(value, dict):
        return {key: expand_env(item) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env(item) for item in value]
    if not isinstance(value, str):
        return value
    return ENV_PLACEHOLDER.sub(
        lambda m: os.environ.get(m.group('name'), m.group('default') or ''),
        value,
    )


def read_settings_file(path: Path) -> dict:
    """Parsed settings file, or an empty dict when it does not exist."""
    if not path.is_file():
        return {}
    with open(path) as f:
        return expand_env(yaml.safe_load(f) or {})


class ProcessingSettings(BaseSettings):
    # Documents at or below this page count are sent as one chunk
    page_split_threshold: int = 1
    max_workers: int = 1
    job_timeout: int = 1800
    conflict_tolerance: float = 0.01
    debug_preview_chars: int = 2000


class StorageSettings(BaseSettings):
    bucket: str = "lab-pdfs"
    base_path: str = "storage"


class DatabaseSettings(BaseSettings):
    url: str = "sqlite:///./lab_extraction.db"


class GeminiSettings(BaseSettings):
    model: str = "gemini-2.5-pro"
    api_key: Optional[str] = None
    timeout: int = 600
    temperature: float = 0.1
    max_output_tokens: int = 64000


class OpenAISettings(BaseSettings):
    model: str = "gpt-5.1"
    api_key: Optional[str] = None
    timeout: int = 600
    max_output_tokens: int = 32000


class RedisSettings(BaseSettings):
    url: str = "redis://localhost:6379/0"


class StandardizationSettings(BaseSettings):
    """Settings for biomarker standards matching."""
    standards_path: str = "config/biomarker_standards.yaml"
    fuzzy_threshold: float = 0.85
    use_fuzzy: bool = True
    default_gender: str = "male"


class Settings(BaseSettings):
    processing: ProcessingSettings = ProcessingSettings()
    storage: StorageSettings = StorageSettings()
    database: DatabaseSettings = DatabaseSettings()
    gemini: GeminiSettings = GeminiSettings()
    openai: OpenAISettings = OpenAISettings()
    redis: RedisSettings = RedisSettings()
    standardization: StandardizationSettings = StandardizationSettings()

    class Config:
        env_file = ".env"
        env_nested_delimiter = "__"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Settings from config/settings.yaml, read once per process."""
    return Settings(**read_settings_file(project_root / "config" / "settings.yaml"))
