"""Category classification for valuation routing.

The classifier resolves an item to a category in a fixed order:

1. name-pattern overrides (highest priority wins; beats the AI vote)
2. the category the models voted for
3. the caller's hint
4. ordered name-parsing families (barcode, VIN, domain lexicon)
5. keyword scoring
6. ``general``

All matching data lives in ``table.yaml`` next to this module.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import re

import yaml

from quorum.votes import CategoryDetection, CategorySource

logger = logging.getLogger(__name__)

DEFAULT_TABLE_PATH = Path(__file__).resolve().parent / "table.yaml"
DEFAULT_CATEGORY = "general"
IGNORED_CATEGORIES = frozenset({"", "general", "unknown", "other", "none", "n_a"})

OVERRIDE_CONFIDENCE = 0.97
AI_VOTE_CONFIDENCE = 0.95
HINT_CONFIDENCE = 0.90
NAME_PARSE_CONFIDENCE = 0.92
DEFAULT_CONFIDENCE = 0.5

_SEPARATORS = re.compile(r"[\s_\-]+")


def _word_regex(term: str) -> re.Pattern:
    return re.compile(r"(?<![a-z0-9])" + re.escape(term) + r"(?![a-z0-9])")


def clean_category(value: str) -> str:
    return _SEPARATORS.sub("_", value.casefold().strip()).strip("_")


@dataclass(frozen=True)
class TermSet:
    """Substring patterns plus whole-word terms, matched against case-folded text."""
    patterns: Tuple[str, ...] = ()
    words: Tuple[Tuple[str, re.Pattern], ...] = ()

    @classmethod
    def build(cls, patterns: Sequence[str] | None, words: Sequence[str] | None) -> "TermSet":
        return cls(
            patterns=tuple(str(p).casefold() for p in patterns or []),
            words=tuple((str(w).casefold(), _word_regex(str(w).casefold())) for w in words or []),
        )

    def __bool__(self) -> bool:
        return bool(self.patterns or self.words)

    def matches(self, text: str) -> List[str]:
        found = [p for p in self.patterns if p in text]
        found.extend(term for term, rx in self.words if rx.search(text))
        return found


@dataclass(frozen=True)
class Rule:
    category: str
    terms: TermSet
    requires: TermSet = field(default_factory=TermSet)
    unless: TermSet = field(default_factory=TermSet)
    regex: Optional[re.Pattern] = None
    priority: int = 0
    name: str = ""

    @classmethod
    def from_entry(cls, entry: Dict[str, Any]) -> "Rule":
        if not entry.get("category"):
            raise ValueError(f"Category table entry without category: {entry}")
        regex = entry.get("regex")
        return cls(
            category=str(entry["category"]),
            terms=TermSet.build(entry.get("patterns"), entry.get("words")),
            requires=TermSet.build(entry.get("requires"), entry.get("requires_words")),
            unless=TermSet.build(entry.get("unless"), entry.get("unless_words")),
            regex=re.compile(regex) if regex else None,
            priority=int(entry.get("priority", 0)),
            name=str(entry.get("name", entry["category"])),
        )

    def match(self, text: str) -> List[str]:
        """Matched terms, or an empty list when the rule does not fire."""
        found: List[str] = []
        if self.regex is not None:
            hit = self.regex.search(text)
            if hit:
                found.append(hit.group(0))
        found.extend(self.terms.matches(text))
        if not found:
            return []
        if self.requires and not self.requires.matches(text):
            return []
        if self.unless and self.unless.matches(text):
            return []
        return found


@dataclass(frozen=True)
class AliasRule:
    category: str
    equals: frozenset
    contains: Tuple[str, ...]
    tokens: frozenset
    unless: Tuple[str, ...]

    @classmethod
    def from_entry(cls, entry: Dict[str, Any]) -> "AliasRule":
        return cls(
            category=str(entry["category"]),
            equals=frozenset(clean_category(str(v)) for v in entry.get("equals", [])),
            contains=tuple(str(v).casefold() for v in entry.get("contains", [])),
            tokens=frozenset(str(v).casefold() for v in entry.get("tokens", [])),
            unless=tuple(str(v).casefold() for v in entry.get("unless", [])),
        )

    def applies(self, cleaned: str) -> bool:
        hit = (
            cleaned in self.equals
            or any(c in cleaned for c in self.contains)
            or bool(self.tokens.intersection(cleaned.split("_")))
        )
        if not hit:
            return False
        return not any(u in cleaned for u in self.unless)


@dataclass(frozen=True)
class Keyword:
    term: str
    pattern: re.Pattern
    score: int


class CategoryTable:
    """Compiled form of the category routing table."""

    def __init__(self, data: Dict[str, Any], source: str = "<memory>") -> None:
        self.source = source
        self.version = data.get("version")
        # sorted() is stable, so equal priorities keep declaration order
        self.overrides: List[Rule] = sorted(
            (Rule.from_entry(e) for e in data.get("overrides", [])),
            key=lambda r: -r.priority,
        )
        self.name_patterns: List[Rule] = [Rule.from_entry(e) for e in data.get("name_patterns", [])]
        self.keywords: Dict[str, List[Keyword]] = {}
        for category, terms in (data.get("keywords") or {}).items():
            self.keywords[str(category)] = [
                Keyword(str(t).casefold(), _word_regex(str(t).casefold()), len(str(t).split()))
                for t in terms or []
            ]
        self.aliases: List[AliasRule] = [AliasRule.from_entry(e) for e in data.get("aliases", [])]
        self._authority: Dict[str, Tuple[str, ...]] = {
            str(k): tuple(str(s) for s in v or [])
            for k, v in (data.get("authority_sources") or {}).items()
        }

    @classmethod
    def load(cls, path: Path | str | None = None) -> "CategoryTable":
        path = Path(path) if path else DEFAULT_TABLE_PATH
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        table = cls(data, source=str(path))
        logger.debug(f"Loaded category table v{table.version} from {path}")
        return table

    def categories(self) -> List[str]:
        seen: Dict[str, None] = {}
        for rule in self.overrides + self.name_patterns:
            seen.setdefault(rule.category, None)
        for category in self.keywords:
            seen.setdefault(category, None)
        for alias in self.aliases:
            seen.setdefault(alias.category, None)
        for category in self._authority:
            seen.setdefault(category, None)
        return list(seen)

    def normalize(self, category: str | None) -> str:
        cleaned = clean_category(category or "")
        if not cleaned:
            return ""
        for alias in self.aliases:
            if alias.applies(cleaned):
                return alias.category
        return cleaned

    def authority_sources(self, category: str | None) -> Tuple[str, ...]:
        if not category:
            return ()
        if category in self._authority:
            return self._authority[category]
        return self._authority.get(self.normalize(category), ())

    def is_authority_backed(self, category: str | None) -> bool:
        return bool(self.authority_sources(category))


@lru_cache(maxsize=4)
def load_table(path: str | None = None) -> CategoryTable:
    return CategoryTable.load(path)


class CategoryClassifier:
    def __init__(self, table: CategoryTable | None = None) -> None:
        self.table = table or load_table()

    def normalize(self, category: str | None) -> str:
        return self.table.normalize(category)

    def _usable(self, category: str | None) -> str | None:
        normalized = self.normalize(category)
        if normalized in IGNORED_CATEGORIES:
            return None
        return normalized

    def classify(
        self,
        item_name: str,
        hint: str | None = None,
        ai_vote: str | None = None,
    ) -> CategoryDetection:
        text = (item_name or "").casefold()

        detection = self._override(text)
        if detection is None:
            voted = self._usable(ai_vote)
            if voted:
                detection = CategoryDetection(voted, AI_VOTE_CONFIDENCE, CategorySource.AI_VOTE, (ai_vote,))
        if detection is None:
            hinted = self._usable(hint)
            if hinted:
                detection = CategoryDetection(hinted, HINT_CONFIDENCE, CategorySource.HINT, (hint,))
        if detection is None:
            detection = self._name_parse(text)
        if detection is None:
            detection = self._keywords(text)
        if detection is None:
            detection = CategoryDetection(DEFAULT_CATEGORY, DEFAULT_CONFIDENCE, CategorySource.DEFAULT)

        logger.debug(
            f"Category for {item_name!r}: {detection.category} "
            f"({detection.source.value}, {detection.confidence:.2f})"
        )
        return detection

    def _override(self, text: str) -> CategoryDetection | None:
        # overrides are pre-sorted by priority, so the first hit is the winner
        for rule in self.table.overrides:
            found = rule.match(text)
            if found:
                return CategoryDetection(
                    rule.category, OVERRIDE_CONFIDENCE, CategorySource.NAME_OVERRIDE, tuple(found)
                )
        return None

    def _name_parse(self, text: str) -> CategoryDetection | None:
        for rule in self.table.name_patterns:
            found = rule.match(text)
            if found:
                return CategoryDetection(
                    rule.category, NAME_PARSE_CONFIDENCE, CategorySource.NAME_PARSE, tuple(found)
                )
        return None

    def _keywords(self, text: str) -> CategoryDetection | None:
        best: Tuple[int, int, int] | None = None
        best_category = ""
        best_terms: List[str] = []
        for order, (category, keywords) in enumerate(self.table.keywords.items()):
            matched = [k for k in keywords if k.pattern.search(text)]
            if not matched:
                continue
            score = sum(k.score for k in matched)
            rank = (score, len(category), -order)
            if best is None or rank > best:
                best = rank
                best_category = category
                best_terms = [k.term for k in matched]
        if best is None:
            return None
        confidence = min(0.95, 0.5 + 0.1 * best[0])
        return CategoryDetection(best_category, confidence, CategorySource.KEYWORDS, tuple(best_terms))


@lru_cache(maxsize=1)
def default_classifier() -> CategoryClassifier:
    return CategoryClassifier(load_table())


def classify(item_name: str, hint: str | None = None, ai_vote: str | None = None) -> CategoryDetection:
    return default_classifier().classify(item_name, hint=hint, ai_vote=ai_vote)


def normalize_category(category: str | None) -> str:
    return default_classifier().normalize(category)
