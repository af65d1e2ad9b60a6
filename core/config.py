"""
core/config.py -- Centralized configuration via pydantic-settings.

All environment variable reads for corecount happen here. No module should
call os.getenv() or os.environ.get() directly. Only the CLI calls
get_settings(); the pipeline itself receives explicit values (an IntakeFolders,
a LedgerStore, a ReferenceData) so it can run against any paths and ledger,
which is what the tests do.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from CORECOUNT_* environment
      variables and an optional .env file. Type coercion and validation are
      built in (paths become pathlib.Path, log level is upper-cased).

  @model_validator(mode="after"): Cross-field check that the three intake
      folders are distinct. Moving a file "to processed" when processed is the
      input folder would re-import it forever.

Layer rule: core/ is the kernel. This module may not import from ledger/.
"""

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class IntakeFolders:
    """The three directories of the folder-based import workflow."""

    input_dir: Path
    processed_dir: Path
    discards_dir: Path


class Settings(BaseSettings):
    """Settings loaded from CORECOUNT_* environment variables and .env.

    All fields have defaults so Settings() can be instantiated in tests
    without a real .env file.
    E.g. `database_url` reads from CORECOUNT_DATABASE_URL.
    """

    model_config = SettingsConfigDict(
        env_prefix="CORECOUNT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///data/corecount.db"

    # ------------------------------------------------------------------
    # Folder intake
    # ------------------------------------------------------------------

    input_dir: Path = Path("data/input")
    processed_dir: Path = Path("data/processed")
    discards_dir: Path = Path("data/discards")

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------

    # JSON file with processor/OS/virtualization eligibility rules.
    # None means no rules: every eligibility flag is recorded as "unknown".
    eligibility_rules_file: Optional[Path] = None

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value!r}")
        return level

    @model_validator(mode="after")
    def validate_folders(self) -> "Settings":
        """Reject configurations where two intake folders resolve to the same path."""
        resolved = [p.expanduser().resolve() for p in (self.input_dir, self.processed_dir, self.discards_dir)]
        if len(set(resolved)) != 3:
            raise ValueError("input_dir, processed_dir and discards_dir must be three different directories.")
        return self

    def folders(self) -> IntakeFolders:
        return IntakeFolders(
            input_dir=self.input_dir,
            processed_dir=self.processed_dir,
            discards_dir=self.discards_dir,
        )


@lru_cache
def get_settings() -> Settings:
    """Return the Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
