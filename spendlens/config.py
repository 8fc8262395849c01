"""YAML configuration loader for SpendLens.

Loads the two config files from the config/ directory:
  settings.yaml, categories.yaml
"""

from datetime import timedelta
from pathlib import Path

import yaml

from spendlens.extraction.currency import (
    DEFAULT_BASELINE_CURRENCY,
    DEFAULT_JAPANESE_BANK_KEYWORDS,
    CurrencyPolicy,
    normalize_currency_code,
)

DEFAULT_EXTRACTION_MODEL = "claude-sonnet-4-20250514"
DEFAULT_INSIGHTS_MODEL = "claude-sonnet-4-20250514"
DEFAULT_MAX_TOKENS = 8192
DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_TTL_HOURS = 24
DEFAULT_MAX_WORKERS = 2
DEFAULT_STALE_AFTER_SECONDS = 900
DEFAULT_STABILITY_SECONDS = 10
DEFAULT_POLL_INTERVAL = 30


class Config:
    """Loads and provides access to all YAML configuration files."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._settings: dict | None = None
        self._categories: list[dict] | None = None

    def _load(self, filename: str) -> dict | list:
        path = self.config_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        return data

    @property
    def settings(self) -> dict:
        if self._settings is None:
            data = self._load("settings.yaml")
            if not isinstance(data, dict):
                raise ValueError("settings.yaml must be a mapping")
            self._settings = data
        return self._settings

    def _section(self, name: str) -> dict:
        return self.settings.get(name) or {}

    @property
    def categories(self) -> list[dict]:
        """Category vocabulary: [{"name": ..., "examples": [...]}, ...].

        Plain strings in the YAML list are accepted as names without examples.
        """
        if self._categories is None:
            data = self._load("categories.yaml")
            if isinstance(data, dict):
                data = data.get("categories", [])
            self._categories = [
                {"name": c, "examples": []} if isinstance(c, str) else c
                for c in data
            ]
        return self._categories

    # ── Currency ─────────────────────────────────────────────

    @property
    def baseline_currency(self) -> str:
        code = normalize_currency_code(self._section("currency").get("baseline"))
        return code or DEFAULT_BASELINE_CURRENCY

    @property
    def currency_policy(self) -> CurrencyPolicy:
        section = self._section("currency")
        keywords = section.get("japanese_bank_keywords")
        if keywords is None:
            keywords = DEFAULT_JAPANESE_BANK_KEYWORDS
        return CurrencyPolicy(
            baseline=self.baseline_currency,
            japanese_override=bool(section.get("japanese_override", True)),
            japanese_bank_keywords=tuple(str(k).lower() for k in keywords),
        )

    # ── Insights ─────────────────────────────────────────────

    @property
    def insights_ttl(self) -> timedelta:
        hours = self._section("insights").get("ttl_hours", DEFAULT_TTL_HOURS)
        return timedelta(hours=float(hours))

    # ── Inference service ────────────────────────────────────

    @property
    def extraction_model(self) -> str:
        return self._section("ai").get("extraction_model", DEFAULT_EXTRACTION_MODEL)

    @property
    def insights_model(self) -> str:
        return self._section("ai").get("insights_model", DEFAULT_INSIGHTS_MODEL)

    @property
    def max_tokens(self) -> int:
        return int(self._section("ai").get("max_tokens", DEFAULT_MAX_TOKENS))

    @property
    def timeout_seconds(self) -> float:
        """Upper bound on a single inference call. No retries are made."""
        return float(self._section("ai").get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS))

    # ── Processing ───────────────────────────────────────────

    @property
    def pipeline_max_workers(self) -> int:
        return int(self._section("pipeline").get("max_workers", DEFAULT_MAX_WORKERS))

    @property
    def pipeline_stale_after(self) -> timedelta:
        """Age after which a "processing" claim is treated as abandoned.

        Must exceed ai.timeout_seconds, otherwise a slow but live run could
        be taken over.
        """
        seconds = float(self._section("pipeline").get(
            "stale_after_seconds", DEFAULT_STALE_AFTER_SECONDS,
        ))
        if seconds <= self.timeout_seconds:
            raise ValueError(
                f"pipeline.stale_after_seconds ({seconds:g}) must exceed"
                f" ai.timeout_seconds ({self.timeout_seconds:g})"
            )
        return timedelta(seconds=seconds)

    @property
    def watch_stability_seconds(self) -> int:
        return int(self._section("watch").get("stability_seconds", DEFAULT_STABILITY_SECONDS))

    @property
    def watch_poll_interval(self) -> int:
        return int(self._section("watch").get("poll_interval", DEFAULT_POLL_INTERVAL))
