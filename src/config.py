"""YAML configuration loader for SpendSort.

Loads the seed config files from the config/ directory:
  categories.yaml, issuers.yaml, settings.yaml
"""

from pathlib import Path

import yaml

DEFAULT_CONFIDENCE_THRESHOLD = 0.75
DEFAULT_CONCURRENCY = 5
DEFAULT_AI_CACHE_SIZE = 1000
DEFAULT_AI_TIMEOUT_SECONDS = 60.0
DEFAULT_AI_MODEL = "claude-sonnet-4-20250514"
DEFAULT_ERROR_SAMPLE_SIZE = 10


class Config:
    """Loads and provides access to all YAML configuration files."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._categories: list[dict] | None = None
        self._issuers: list[dict] | None = None
        self._settings: dict | None = None

    def _load(self, filename: str) -> dict | list:
        path = self.config_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        return data

    @property
    def categories(self) -> list[dict]:
        """Category list: [{"id": "groceries", "name": "Groceries"}, ...]."""
        if self._categories is None:
            data = self._load("categories.yaml")
            raw = data.get("categories", []) if isinstance(data, dict) else data
            categories: list[dict] = []
            for entry in raw:
                if isinstance(entry, str):
                    entry = {"id": _slugify(entry), "name": entry}
                cat_id = entry.get("id") or _slugify(entry.get("name", ""))
                name = entry.get("name", "")
                if cat_id and name:
                    categories.append({"id": cat_id, "name": name})
            self._categories = categories
        return self._categories

    @property
    def issuers(self) -> list[dict]:
        """Known card issuers whose files have a fixed sign convention."""
        if self._issuers is None:
            data = self._load("issuers.yaml")
            self._issuers = data.get("issuers", []) if isinstance(data, dict) else data
        return self._issuers

    @property
    def settings(self) -> dict:
        if self._settings is None:
            self._settings = self._load("settings.yaml")
        return self._settings

    @property
    def known_issuers(self) -> dict[str, str]:
        """Map lowercase filename substring → convention ("positive"/"negative")."""
        known: dict[str, str] = {}
        for issuer in self.issuers:
            pattern = str(issuer.get("pattern", "")).strip().lower()
            convention = str(issuer.get("convention", "")).strip().lower()
            # Skip incomplete entries rather than guessing a convention
            if pattern and convention in ("positive", "negative"):
                known[pattern] = convention
        return known

    @property
    def confidence_threshold(self) -> float:
        """Score at or above which a categorization is auto-approved."""
        return float(self.settings.get("confidence_threshold", DEFAULT_CONFIDENCE_THRESHOLD))

    @property
    def concurrency(self) -> int:
        return int(self.settings.get("concurrency", DEFAULT_CONCURRENCY))

    @property
    def ai_cache_size(self) -> int:
        return int(self.settings.get("ai_cache_size", DEFAULT_AI_CACHE_SIZE))

    @property
    def ai_timeout_seconds(self) -> float:
        return float(self.settings.get("ai_timeout_seconds", DEFAULT_AI_TIMEOUT_SECONDS))

    @property
    def ai_model(self) -> str:
        return self.settings.get("ai_model", DEFAULT_AI_MODEL)

    @property
    def error_sample_size(self) -> int:
        """Max skip reasons reported per file in an upload result."""
        return int(self.settings.get("error_sample_size", DEFAULT_ERROR_SAMPLE_SIZE))

    @property
    def learning(self) -> dict:
        """Rule-learning knobs: auto_learn, auto_boost, accept_boost, correction_boost."""
        defaults = {
            "auto_learn": True,
            "auto_boost": 0.0,
            "accept_boost": 0.2,
            "correction_boost": 0.3,
        }
        defaults.update(self.settings.get("learning") or {})
        return defaults


def _slugify(name: str) -> str:
    return "-".join(name.lower().split())
