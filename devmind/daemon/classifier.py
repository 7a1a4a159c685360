"""Heuristic activity classifier.

Scores free text against weighted keyword and pattern families and labels it
with the best matching activity type. The tables are immutable and passed to
each classifier instance, so tests and tenants can override them.
"""

import re
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Pattern, Sequence, Tuple, Union

from .models import ActivityType


HISTORY_WINDOW = 10
KEYWORD_WEIGHT = 10
PATTERN_WEIGHT = 15
MAX_KEY_ELEMENTS = 5

FILE_TOKEN = re.compile(r'[\w-]+\.[\w]+|[\w-]+/[\w-]+\.[\w]+|[\w-]+\\[\w-]+\.[\w]+')
FUNCTION_TOKEN = re.compile(r'function\s+(\w+)|def\s+(\w+)|const\s+(\w+)\s*=')
CLASS_TOKEN = re.compile(r'class\s+(\w+)')


@dataclass(frozen=True)
class PatternFamily:
    """Keywords, regex signatures and boosts for one activity type."""
    activity_type: ActivityType
    keywords: Tuple[str, ...]
    patterns: Tuple[Pattern, ...]
    base_boost: int
    history_weight: int = 0

    def keyword_hits(self, lowered: str) -> List[str]:
        return [k for k in self.keywords if k.lower() in lowered]

    def pattern_hits(self, text: str) -> int:
        return sum(1 for p in self.patterns if p.search(text))


def _family(activity_type: ActivityType,
            keywords: Iterable[str],
            patterns: Iterable[Union[str, Tuple[str, int]]],
            base_boost: int,
            history_weight: int = 0) -> PatternFamily:
    compiled = []
    for p in patterns:
        if isinstance(p, tuple):
            compiled.append(re.compile(p[0], p[1]))
        else:
            compiled.append(re.compile(p, re.IGNORECASE))
    return PatternFamily(
        activity_type=activity_type,
        keywords=tuple(keywords),
        patterns=tuple(compiled),
        base_boost=base_boost,
        history_weight=history_weight,
    )


@dataclass(frozen=True)
class ClassifierTables:
    """Ordered, immutable family tables. Declaration order breaks score ties."""
    families: Tuple[PatternFamily, ...]

    @classmethod
    def default(cls) -> "ClassifierTables":
        return cls(families=(
            _family(
                ActivityType.BUG_FIX,
                keywords=[
                    "fix", "bug", "fix bug", "bug fix", "error", "issue", "resolve",
                    "patch", "debug", "exception", "crash",
                    "修复错误", "修复bug", "错误", "问题", "解决", "调试", "异常", "崩溃",
                ],
                patterns=[
                    r'\bfix(ed|es|ing)?\b',
                    r'\bbugs?\b',
                    r'\berror\b',
                    r'\bexception\b',
                    r'\bdebug\b',
                    r'\bcrash\b',
                ],
                base_boost=25,
                history_weight=8,
            ),
            _family(
                ActivityType.FEATURE_ADD,
                keywords=[
                    "add", "create", "new", "implement", "build", "develop", "introduce",
                    "new page", "new component", "new feature", "new functionality",
                    "添加", "新增", "创建", "构建", "引入", "新页面", "新组件", "新功能",
                ],
                patterns=[
                    r'\bcreate\s+(new\s+)?[\w]+',
                    r'\badd\s+(new\s+)?[\w]+',
                    r'\bimplement\s+(new\s+)?[\w]+',
                    r'\bnew\s+(page|component|feature|module|function)',
                    r'\bbuild\s+(new\s+)?[\w]+',
                ],
                base_boost=35,
            ),
            _family(
                ActivityType.CODE_CHANGE,
                keywords=[
                    "implement", "refactor", "optimize", "algorithm", "function", "class", "method",
                    "实现", "优化", "算法", "函数", "类", "方法",
                ],
                patterns=[
                    (r'\bfunction\s+\w+\s*\([^)]*\)\s*\{', 0),
                    (r'\bclass\s+\w+\s*[\{:(]', 0),
                    (r'\bconst\s+\w+\s*=\s*\(?[^)]*\)?\s*=>', 0),
                    (r'\bdef\s+\w+\s*\([^)]*\)\s*(->\s*[^:]+)?:', 0),
                    (r'\bpublic\s+\w+\s+\w+\s*\(', 0),
                ],
                base_boost=20,
                history_weight=5,
            ),
            _family(
                ActivityType.REFACTOR,
                keywords=[
                    "refactor", "restructure", "reorganize", "cleanup", "improve",
                    "重构", "重组", "清理", "改进",
                ],
                patterns=[r'\brefactor', r'\brestructure', r'\breorganize'],
                base_boost=18,
            ),
            _family(
                ActivityType.SOLUTION_DESIGN,
                keywords=[
                    "design", "architecture", "pattern", "strategy", "approach", "solution",
                    "plan", "structure",
                    "设计", "架构", "模式", "策略", "方案", "计划", "结构",
                ],
                patterns=[
                    r'\bdesign\b', r'\barchitecture\b', r'\bpattern\b',
                    r'\bstrategy\b', r'\bapproach\b',
                ],
                base_boost=30,
                history_weight=6,
            ),
            _family(
                ActivityType.TEST,
                keywords=[
                    "test", "unit", "integration", "e2e", "spec", "assertion", "mock",
                    "测试", "单元", "集成", "断言", "模拟",
                ],
                patterns=[
                    r'\btest\b',
                    (r'\bit\(', 0),
                    (r'\bdescribe\(', 0),
                    (r'\bexpect\(', 0),
                    r'\bassert\b',
                ],
                base_boost=15,
            ),
            _family(
                ActivityType.DOCUMENTATION,
                keywords=[
                    "document", "readme", "comment", "doc", "guide", "tutorial",
                    "文档", "说明", "注释", "指南", "教程",
                ],
                patterns=[
                    (r'/\*\*[\s\S]*?\*/', 0),
                    (r'//.*', 0),
                    (r'#.*', 0),
                    (r'```[\s\S]*?```', 0),
                ],
                base_boost=10,
            ),
        ))

    def family(self, activity_type: ActivityType) -> PatternFamily:
        for fam in self.families:
            if fam.activity_type == activity_type:
                return fam
        raise KeyError(activity_type)

    def with_family(self, activity_type: ActivityType, **changes) -> "ClassifierTables":
        """Copy of the tables with one family's fields replaced."""
        return ClassifierTables(families=tuple(
            replace(fam, **changes) if fam.activity_type == activity_type else fam
            for fam in self.families
        ))


@dataclass
class KeyElements:
    files: List[str] = field(default_factory=list)
    functions: List[str] = field(default_factory=list)
    classes: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            'files': list(self.files),
            'functions': list(self.functions),
            'classes': list(self.classes),
            'keywords': list(self.keywords),
        }


@dataclass
class ActivityClassification:
    """Labeled activity type with confidence in [0, 100]."""
    type: ActivityType
    confidence: int
    key_elements: KeyElements
    reasoning: str
    scores: Dict[ActivityType, int] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'type': self.type.value,
            'confidence': self.confidence,
            'key_elements': self.key_elements.to_dict(),
            'reasoning': self.reasoning,
            'scores': {t.value: s for t, s in self.scores.items()},
        }


HistoryItem = Union[ActivityType, str, ActivityClassification]


def _unique(items: Iterable[str], limit: int = MAX_KEY_ELEMENTS) -> List[str]:
    seen: List[str] = []
    for item in items:
        if item and item not in seen:
            seen.append(item)
            if len(seen) == limit:
                break
    return seen


def _history_type(item: HistoryItem) -> Optional[ActivityType]:
    if isinstance(item, ActivityClassification):
        return item.type
    if isinstance(item, ActivityType):
        return item
    try:
        return ActivityType(str(item))
    except ValueError:
        return None


class ActivityClassifier:
    """Labels development activity text. Pure and deterministic."""

    def __init__(self, tables: Optional[ClassifierTables] = None):
        self.tables = tables or ClassifierTables.default()

    def classify(self,
                 text: str,
                 recent_history: Sequence[HistoryItem] = ()) -> ActivityClassification:
        """
        Classify activity text.

        Args:
            text: Free-form activity description or code
            recent_history: Earlier activity types, oldest first

        Returns:
            Winning type, clamped confidence, key elements and reasoning
        """
        text = text if isinstance(text, str) else str(text or "")
        lowered = text.lower()

        history_counts: Dict[ActivityType, int] = {}
        for item in list(recent_history)[-HISTORY_WINDOW:]:
            kind = _history_type(item)
            if kind is not None:
                history_counts[kind] = history_counts.get(kind, 0) + 1

        scores: Dict[ActivityType, int] = {}
        for fam in self.tables.families:
            score = KEYWORD_WEIGHT * len(fam.keyword_hits(lowered))
            score += PATTERN_WEIGHT * fam.pattern_hits(text)
            score += fam.base_boost
            score += fam.history_weight * history_counts.get(fam.activity_type, 0)
            scores[fam.activity_type] = score

        winner = self.tables.families[0].activity_type
        for fam in self.tables.families:
            if scores[fam.activity_type] > scores[winner]:
                winner = fam.activity_type

        confidence = max(0, min(100, scores[winner]))

        return ActivityClassification(
            type=winner,
            confidence=confidence,
            key_elements=self.extract_key_elements(text, winner),
            reasoning=self._reasoning(scores, winner),
            scores=scores,
        )

    def extract_key_elements(self, text: str, activity_type: ActivityType) -> KeyElements:
        functions = (
            next(g for g in m.groups() if g)
            for m in FUNCTION_TOKEN.finditer(text)
        )
        return KeyElements(
            files=_unique(m.group(0) for m in FILE_TOKEN.finditer(text)),
            functions=_unique(functions),
            classes=_unique(m.group(1) for m in CLASS_TOKEN.finditer(text)),
            keywords=_unique(self.tables.family(activity_type).keyword_hits(text.lower())),
        )

    def _reasoning(self, scores: Dict[ActivityType, int], winner: ActivityType) -> str:
        # sorted() is stable, so equal scores keep declaration order
        top = sorted(scores.items(), key=lambda kv: kv[1], reverse=True)[:3]
        parts = ", ".join(f"{kind.value}({score})" for kind, score in top)
        return f"Detected as {winner.value} based on scores: {parts}"
