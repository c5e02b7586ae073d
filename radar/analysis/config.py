"""
Analysis configuration - detection tuning, keyword tables, and key derivation.
"""

import re
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Literal

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator

from radar.analysis.types import TimeSeriesKey


# Words to ignore when comparing headlines
STOP_WORDS: frozenset[str] = frozenset(
    {
        "the", "a", "an", "is", "are", "was", "were", "be", "been", "have",
        "has", "had", "do", "does", "did", "will", "would", "could", "should",
        "may", "might", "must", "shall", "can", "to", "of", "in", "for", "on",
        "with", "at", "by", "from", "as", "into", "through", "during", "before",
        "after", "above", "below", "between", "under", "again", "further",
        "then", "once", "and", "but", "or", "nor", "so", "yet", "both",
        "either", "neither", "not", "only", "own", "same", "than", "too",
        "very", "just", "also", "now", "here", "there", "when", "where", "why",
        "how", "all", "each", "every", "few", "more", "most", "other", "some",
        "such", "no", "any", "new", "says", "said", "report", "reports",
        "according", "news", "update", "its", "it", "this", "that", "over",
        "amid", "after", "live", "breaking",
    }
)

# Token folding applied after plural stripping
TOKEN_ALIASES: dict[str, str] = {
    "tehran": "iran",
    "iranian": "iran",
    "attack": "strike",
    "hit": "strike",
    "airstrike": "strike",
    "kyiv": "ukraine",
    "kiev": "ukraine",
    "ukrainian": "ukraine",
    "moscow": "russia",
    "kremlin": "russia",
    "russian": "russia",
    "beijing": "china",
    "chinese": "china",
    "israeli": "israel",
    "pyongyang": "dprk",
    "fed": "federal_reserve",
}

# Signed sentiment weights, grouped so each set can be tuned on its own
DEFAULT_SENTIMENT_KEYWORDS: dict[str, dict[str, float]] = {
    "escalation": {
        "escalate": 1.0,
        "escalation": 1.0,
        "surge": 1.0,
        "strike": 1.0,
        "attack": 1.0,
        "invasion": 1.5,
        "invade": 1.5,
        "mobilize": 1.0,
        "missile": 1.0,
        "retaliate": 1.0,
        "martial law": 1.5,
        "nuclear": 1.0,
    },
    "de_escalation": {
        "de-escalate": -1.0,
        "de-escalation": -1.0,
        "ceasefire": -1.5,
        "truce": -1.0,
        "peace talks": -1.0,
        "withdraw": -1.0,
        "agreement": -0.5,
    },
}

# Region keyword mapping (hotspot keys)
REGION_KEYWORDS: dict[str, list[str]] = {
    "EUROPE": [
        "nato",
        "eu",
        "european",
        "ukraine",
        "russia",
        "germany",
        "france",
        "uk",
        "britain",
        "poland",
    ],
    "MENA": [
        "iran",
        "israel",
        "saudi",
        "syria",
        "iraq",
        "gaza",
        "lebanon",
        "yemen",
        "houthi",
        "middle east",
    ],
    "APAC": [
        "china",
        "taiwan",
        "japan",
        "korea",
        "dprk",
        "south china sea",
        "asean",
        "philippines",
    ],
    "AMERICAS": ["us", "america", "canada", "mexico", "brazil", "venezuela"],
    "AFRICA": ["africa", "sahel", "niger", "sudan", "ethiopia", "somalia"],
}

# Topic keyword mapping (category keys)
TOPIC_KEYWORDS: dict[str, list[str]] = {
    "CYBER": ["cyber", "hack", "ransomware", "malware", "breach", "vulnerability"],
    "NUCLEAR": ["nuclear", "icbm", "warhead", "uranium", "plutonium"],
    "CONFLICT": [
        "war",
        "military",
        "troop",
        "invasion",
        "strike",
        "missile",
        "combat",
        "offensive",
    ],
    "INTEL": ["intelligence", "espionage", "spy", "cia", "mossad", "fsb", "covert"],
    "DEFENSE": ["pentagon", "defense", "army", "navy", "air force"],
    "DIPLO": ["diplomat", "embassy", "treaty", "sanction", "talk", "summit"],
    "MARKETS": ["tariff", "inflation", "federal_reserve", "rate cut", "rate hike", "oil"],
}

# Watch monitors: regex patterns matched against the raw headline
DEFAULT_MONITORS: dict[str, list[str]] = {
    "tariffs": [r"tariff", r"trade war", r"import tax", r"customs duty"],
    "fed-rates": [r"federal reserve", r"interest rate", r"rate cut", r"rate hike", r"fomc"],
    "iran": [r"iran.*nuclear", r"tehran", r"iranian.*strike", r"irgc"],
    "russia-ukraine": [r"ukraine", r"zelensky", r"crimea", r"donbas", r"kyiv"],
    "israel-gaza": [r"gaza", r"hamas", r"netanyahu", r"israel.*attack"],
    "north-korea": [r"north korea", r"pyongyang", r"kim jong", r"dprk"],
    "oil-energy": [r"oil price", r"opec", r"energy crisis", r"brent"],
    "bank-crisis": [r"bank.*fail", r"banking crisis", r"bank run", r"bank.*collapse"],
}

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhdw])\s*$", re.IGNORECASE)
_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}
_NON_WORD = re.compile(r"[^\w\s-]|(?<!\w)-|-(?!\w)")


def parse_duration(value):
    """Accept shorthand like "15m" / "24h" / "7d" in addition to pydantic's formats."""
    if isinstance(value, str):
        match = _DURATION_RE.match(value)
        if match:
            amount, unit = match.groups()
            return timedelta(seconds=float(amount) * _DURATION_UNITS[unit.lower()])
    return value


def window_label(span: timedelta) -> str:
    """Render a window size the way config files spell it (15m, 24h, 7d)."""
    seconds = int(span.total_seconds())
    if seconds > 86400 and seconds % 86400 == 0:
        return f"{seconds // 86400}d"
    for unit, size in (("h", 3600), ("m", 60)):
        if seconds >= size and seconds % size == 0:
            return f"{seconds // size}{unit}"
    return f"{seconds}s"


class RadarConfig(BaseModel):
    """Detection tuning. camelCase option names and snake_case both accepted."""

    model_config = ConfigDict(populate_by_name=True)

    # Clustering
    jaccard_threshold: float = Field(default=0.6, ge=0.0, le=1.0, alias="jaccardThreshold")
    event_retirement_window: timedelta = Field(
        default=timedelta(hours=24), alias="eventRetirementWindow"
    )
    max_title_signatures: int = Field(default=8, ge=1, alias="maxTitleSignatures")
    retired_history_limit: int = Field(default=5000, ge=0, alias="retiredHistoryLimit")
    source_tiers: dict[str, int] = Field(default_factory=dict, alias="sourceTiers")
    token_aliases: dict[str, str] = Field(
        default_factory=lambda: dict(TOKEN_ALIASES), alias="tokenAliases"
    )
    monitors: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_MONITORS.items()},
        alias="monitors",
    )

    # Velocity
    velocity_windows: list[timedelta] = Field(
        default_factory=lambda: [
            timedelta(minutes=15),
            timedelta(hours=1),
            timedelta(hours=6),
            timedelta(hours=24),
        ],
        alias="velocityWindows",
    )
    velocity_history_periods: int = Field(default=24, ge=2, alias="velocityHistoryPeriods")
    velocity_min_periods: int = Field(default=3, ge=1, alias="velocityMinPeriods")
    sigma_threshold: float = Field(default=2.0, gt=0.0, alias="sigmaThreshold")
    min_spike_count: float = Field(default=3.0, ge=0.0, alias="minSpikeCount")
    sentiment_keyword_sets: dict[str, dict[str, float]] = Field(
        default_factory=lambda: {
            k: dict(v) for k, v in DEFAULT_SENTIMENT_KEYWORDS.items()
        },
        alias="sentimentKeywordSets",
    )
    sentiment_delta: float = Field(default=2.0, gt=0.0, alias="sentimentDelta")
    max_clock_skew: timedelta = Field(default=timedelta(minutes=5), alias="maxClockSkew")

    # Baselines
    baseline_interval: timedelta = Field(default=timedelta(hours=1), alias="baselineInterval")
    baseline_short_days: int = Field(default=7, ge=1, alias="baselineShortDays")
    baseline_long_days: int = Field(default=30, ge=1, alias="baselineLongDays")
    baseline_min_periods: int = Field(default=24, ge=2, alias="baselineMinPeriods")
    primary_baseline: Literal["7d", "30d"] = Field(default="7d", alias="primaryBaseline")

    # Correlation
    correlation_lag_range: timedelta = Field(
        default=timedelta(hours=6), alias="correlationLagRange"
    )
    correlation_resolution: timedelta = Field(
        default=timedelta(minutes=15), alias="correlationResolution"
    )
    correlation_window: timedelta = Field(
        default=timedelta(hours=48), alias="correlationWindow"
    )
    correlation_strength_threshold: float = Field(
        default=0.6, ge=0.0, le=1.0, alias="correlationStrengthThreshold"
    )
    correlation_max_pairs: int = Field(default=200, ge=1, alias="correlationMaxPairs")
    divergence_sigma: float = Field(default=3.0, gt=0.0, alias="divergenceSigma")
    divergence_quiet_sigma: float = Field(default=1.0, ge=0.0, alias="divergenceQuietSigma")

    # Gating
    alert_cooldown: timedelta = Field(default=timedelta(hours=1), alias="alertCooldown")

    @field_validator(
        "event_retirement_window",
        "max_clock_skew",
        "baseline_interval",
        "correlation_lag_range",
        "correlation_resolution",
        "correlation_window",
        "alert_cooldown",
        mode="before",
    )
    @classmethod
    def _parse_duration(cls, value):
        return parse_duration(value)

    @field_validator("velocity_windows", mode="before")
    @classmethod
    def _parse_windows(cls, value):
        if isinstance(value, (list, tuple)):
            return [parse_duration(v) for v in value]
        return value

    @field_validator("velocity_windows")
    @classmethod
    def _sort_windows(cls, value: list[timedelta]) -> list[timedelta]:
        if not value:
            raise ValueError("at least one velocity window is required")
        return sorted(set(value))

    @field_validator("source_tiers")
    @classmethod
    def _check_tiers(cls, value: dict[str, int]) -> dict[str, int]:
        for name, tier in value.items():
            if not 1 <= tier <= 4:
                raise ValueError(f"tier for source '{name}' must be 1..4, got {tier}")
        return value

    @property
    def window_labels(self) -> list[str]:
        return [window_label(w) for w in self.velocity_windows]

    def tier_for(self, source_name: str, fallback: int) -> int:
        """Configured tier for a source, else the tier the item arrived with."""
        if source_name in self.source_tiers:
            return self.source_tiers[source_name]
        return self.source_tiers.get(source_name.lower(), fallback)


def load_radar_config(path: str | Path | None) -> RadarConfig:
    """Load RadarConfig from YAML, falling back to defaults when the file is unusable."""
    if not path:
        return RadarConfig()

    config_path = Path(path)
    if not config_path.exists():
        logger.warning(f"Radar config not found: {config_path}, using defaults")
        return RadarConfig()

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        config = RadarConfig.model_validate(data)
        logger.info(f"Loaded radar config from {config_path}")
        return config
    except Exception as e:
        logger.warning(f"Failed to load radar config {config_path}: {e}, using defaults")
        return RadarConfig()


def normalize_text(text: str) -> str:
    """Lowercase, drop punctuation (keeping in-word hyphens), collapse whitespace."""
    text = _NON_WORD.sub(" ", text.lower())
    return " ".join(text.split())


def fold_plural(token: str) -> str:
    if len(token) > 4 and token.endswith("ies"):
        return token[:-3] + "y"
    if len(token) > 4 and token.endswith(("ches", "shes", "sses", "xes")):
        return token[:-2]
    if len(token) > 3 and token.endswith("s") and not token.endswith(("ss", "us", "is")):
        return token[:-1]
    return token


def tokenize(text: str, aliases: dict[str, str] | None = None) -> frozenset[str]:
    """Token set used for headline similarity."""
    aliases = TOKEN_ALIASES if aliases is None else aliases
    tokens = set()
    for word in normalize_text(text).split():
        if word in STOP_WORDS:
            continue
        word = fold_plural(word)
        tokens.add(aliases.get(word, word))
    return frozenset(tokens)


def jaccard(a: frozenset[str], b: frozenset[str]) -> float:
    """Compute Jaccard similarity between two token sets."""
    if not a or not b:
        return 0.0
    union = len(a | b)
    return len(a & b) / union if union > 0 else 0.0


def _phrase_in(phrase: str, padded: str) -> bool:
    return f" {phrase} " in padded


def detect_regions(tokens: frozenset[str], text: str) -> list[str]:
    """Detect hotspot regions from headline tokens and text."""
    padded = f" {normalize_text(text)} "
    detected = []
    for region, keywords in REGION_KEYWORDS.items():
        if any(k in tokens or _phrase_in(k, padded) for k in keywords):
            detected.append(region)
    return detected


def detect_topics(tokens: frozenset[str], text: str) -> list[str]:
    """Detect topic categories from headline tokens and text."""
    padded = f" {normalize_text(text)} "
    detected = []
    for topic, keywords in TOPIC_KEYWORDS.items():
        if any(k in tokens or _phrase_in(k, padded) for k in keywords):
            detected.append(topic)
    return detected


@dataclass
class Monitor:
    """Watch monitor with compiled regex patterns."""

    id: str
    patterns: list[re.Pattern]

    def matches(self, text: str) -> bool:
        return any(p.search(text) for p in self.patterns)


def compile_monitors(definitions: dict[str, list[str]]) -> list[Monitor]:
    monitors = []
    for monitor_id, patterns in definitions.items():
        compiled = []
        for pattern in patterns:
            try:
                compiled.append(re.compile(pattern, re.IGNORECASE))
            except re.error as e:
                logger.warning(f"Monitor '{monitor_id}' pattern {pattern!r} skipped: {e}")
        if compiled:
            monitors.append(Monitor(id=monitor_id, patterns=compiled))
    return monitors


class KeyDeriver:
    """Maps a headline to the hotspot, category and monitor keys it feeds."""

    def __init__(self, config: RadarConfig):
        self._aliases = config.token_aliases
        self._monitors = compile_monitors(config.monitors)

    def derive(self, title: str) -> list[TimeSeriesKey]:
        tokens = tokenize(title, self._aliases)
        keys = [TimeSeriesKey(kind="hotspot", identifier=r) for r in detect_regions(tokens, title)]
        keys.extend(
            TimeSeriesKey(kind="category", identifier=t) for t in detect_topics(tokens, title)
        )
        keys.extend(
            TimeSeriesKey(kind="monitor", identifier=m.id)
            for m in self._monitors
            if m.matches(title)
        )
        return keys
