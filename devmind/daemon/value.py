"""Four-dimension importance scoring for not-yet-stored content."""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Pattern, Sequence, Tuple

from .models import ActivityType


ALGORITHM_KEYWORDS = [
    "algorithm", "complexity", "big o", "optimization", "performance",
    "算法", "复杂度", "优化", "性能",
]

QUALITY_INDICATORS: List[Tuple[Pattern, int]] = [
    (re.compile(r'\b(clean code|SOLID|design pattern)\b', re.IGNORECASE), 20),
    (re.compile(r'\b(test coverage|unit test|integration test)\b', re.IGNORECASE), 15),
    (re.compile(r'\b(performance|scalability|efficiency)\b', re.IGNORECASE), 18),
]

CHANGED_FILES_HEADER = re.compile(r'(文件修改|修改文件|files? changed?|modified files?)[:|：]', re.IGNORECASE)
CHANGED_FILE_ITEM = re.compile(r'[-*]\s+[^\n]+\.(tsx?|jsx?|vue|py|java|go|rs|cpp|c|h)', re.IGNORECASE)
LINES_ADDED = re.compile(r'(\d+)\s*(lines?|行)\s*(added?|new|新增)', re.IGNORECASE)

COMPLEXITY_KEYWORDS = [
    "race condition", "deadlock", "memory leak", "concurrency", "distributed system",
    "microservices", "scalability", "performance bottleneck", "security vulnerability",
    "竞态条件", "死锁", "内存泄漏", "并发", "分布式", "微服务", "可扩展性", "性能瓶颈", "安全漏洞",
]

TECHNOLOGIES = [
    "react", "vue", "angular", "node", "python", "java", "typescript", "javascript",
    "sql", "mongodb", "redis", "docker", "kubernetes", "aws", "azure", "gcp",
]

IMPACT_INDICATORS: List[Tuple[Pattern, int]] = [
    (re.compile(r'\b(production|critical|urgent|security)\b', re.IGNORECASE), 25),
    (re.compile(r'\b(user|customer|business impact)\b', re.IGNORECASE), 20),
    (re.compile(r'\b(system|infrastructure|database)\b', re.IGNORECASE), 15),
]

INNOVATION_KEYWORDS = ["novel", "innovative", "creative", "unique", "new approach", "创新", "新颖", "独特", "新方法"]
GENERICITY_KEYWORDS = ["generic", "reusable", "extensible", "flexible", "通用", "可复用", "可扩展", "灵活"]
COMPLETENESS_KEYWORDS = ["complete", "comprehensive", "thorough", "detailed", "完整", "全面", "详细"]
UX_KEYWORDS = [
    "user experience", "ux", "usability", "accessibility", "user interface", "ui improvement",
    "interaction", "responsive", "用户体验", "可用性", "交互", "界面优化", "响应式",
]
I18N_KEYWORDS = [
    "internationalization", "i18n", "localization", "l10n", "translation", "multilingual",
    "locale", "language support", "国际化", "本地化", "多语言", "翻译",
]

ABSTRACTION_KEYWORDS = ["abstract", "interface", "generic", "template", "抽象", "接口", "泛型", "模板"]
VERSATILITY_KEYWORDS = ["versatile", "flexible", "adaptable", "configurable", "多用途", "灵活", "可配置"]


@dataclass(frozen=True)
class ReusablePattern:
    name: str
    keywords: Tuple[str, ...]
    score: int
    patterns: Tuple[Pattern, ...] = ()

    def matches(self, content: str, lowered: str) -> int:
        hits = sum(1 for k in self.keywords if k in lowered)
        return hits + sum(1 for p in self.patterns if p.search(content))


REUSABLE_PATTERNS = [
    ReusablePattern("HashRouter anchor handling", ("hashrouter", "anchor", "scrollintoview", "preventdefault"), 20),
    ReusablePattern("i18n integration", ("uselanguage", "i18n", "translation", "locale"), 20),
    ReusablePattern("Error boundary", ("errorboundary", "componentdidcatch", "fallback"), 25),
    ReusablePattern("Custom React hook", ("hook", "useeffect", "usestate"), 20, (re.compile(r'use[A-Z]\w+'),)),
    ReusablePattern("State management", ("redux", "context", "provider", "store"), 18),
]


@dataclass(frozen=True)
class ValueWeights:
    code_significance: float = 0.30
    problem_complexity: float = 0.25
    solution_importance: float = 0.25
    reusability: float = 0.20


@dataclass
class ValueScore:
    """Importance of a candidate memory on four dimensions, each in [0, 100]."""
    code_significance: float
    problem_complexity: float
    solution_importance: float
    reusability: float
    total_score: int
    breakdown: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'code_significance': self.code_significance,
            'problem_complexity': self.problem_complexity,
            'solution_importance': self.solution_importance,
            'reusability': self.reusability,
            'total_score': self.total_score,
            'breakdown': dict(self.breakdown),
        }


def _count(lowered: str, keywords: Sequence[str]) -> int:
    return sum(1 for k in keywords if k.lower() in lowered)


def _clamp(score: float) -> float:
    return max(0.0, min(100.0, score))


def _details(pairs: Sequence[Tuple[bool, str]], default: str) -> str:
    found = [label for present, label in pairs if present]
    return "; ".join(found) if found else default


class ValueEvaluator:
    """Scores content value. Pure, total and deterministic."""

    def __init__(self, weights: Optional[ValueWeights] = None):
        self.weights = weights or ValueWeights()

    def evaluate(self,
                 text: str,
                 activity_type: ActivityType,
                 weights: Optional[ValueWeights] = None) -> ValueScore:
        """
        Score content on four dimensions and blend them into a total.

        Args:
            text: Candidate memory content
            activity_type: Label from the activity classifier
            weights: Optional override of the blend weights

        Returns:
            ValueScore with every dimension clamped to [0, 100]
        """
        text = text if isinstance(text, str) else str(text or "")
        weights = weights or self.weights
        lowered = text.lower()

        significance = self.code_significance(text, lowered, activity_type)
        complexity = self.problem_complexity(text, lowered, activity_type)
        importance = self.solution_importance(lowered, activity_type)
        reusability = self.reusability(text, lowered)

        total = (
            significance * weights.code_significance
            + complexity * weights.problem_complexity
            + importance * weights.solution_importance
            + reusability * weights.reusability
        )

        return ValueScore(
            code_significance=significance,
            problem_complexity=complexity,
            solution_importance=importance,
            reusability=reusability,
            total_score=int(max(0, min(100, round(total)))),
            breakdown={
                'code_details': _details([
                    ("algorithm" in lowered, "Contains algorithm implementation"),
                    ("optimization" in lowered, "Includes optimization techniques"),
                    ("performance" in lowered, "Addresses performance concerns"),
                ], "Standard code change"),
                'problem_details': _details([
                    ("memory leak" in lowered, "Memory leak issue"),
                    ("concurrency" in lowered, "Concurrency problem"),
                    ("security" in lowered, "Security concern"),
                ], "Standard complexity problem"),
                'solution_details': _details([
                    ("innovative" in lowered, "Innovative approach"),
                    ("comprehensive" in lowered, "Comprehensive solution"),
                    ("extensible" in lowered, "Extensible design"),
                ], "Standard solution approach"),
                'reusability_details': _details([
                    ("/**" in text or "///" in text, "Well documented"),
                    ("generic" in lowered, "Generic implementation"),
                    ("```" in text, "Includes code examples"),
                ], "Standard reusability level"),
            },
        )

    def code_significance(self, text: str, lowered: str, activity_type: ActivityType) -> float:
        score = 15 * _count(lowered, ALGORITHM_KEYWORDS)
        for pattern, points in QUALITY_INDICATORS:
            if pattern.search(text):
                score += points

        lines = len(text.split("\n"))
        score += min(20, lines / 10)

        if activity_type in (ActivityType.CODE_CHANGE, ActivityType.REFACTOR):
            score *= 1.2
        elif activity_type == ActivityType.FEATURE_ADD:
            score = max(score, 30)

        return _clamp(score)

    def problem_complexity(self, text: str, lowered: str, activity_type: ActivityType) -> float:
        score = 0.0

        if CHANGED_FILES_HEADER.search(text):
            file_count = len(CHANGED_FILE_ITEM.findall(text))
            if file_count >= 5:
                score += 40
            elif file_count >= 3:
                score += 25
            elif file_count >= 2:
                score += 15

        lines_added = LINES_ADDED.search(text)
        if lines_added:
            score += min(30, int(lines_added.group(1)) / 10)

        score += 12 * _count(lowered, COMPLEXITY_KEYWORDS)
        score += 8 * sum(1 for tech in TECHNOLOGIES if tech in lowered)

        for pattern, points in IMPACT_INDICATORS:
            if pattern.search(text):
                score += points

        if activity_type == ActivityType.BUG_FIX:
            score *= 1.3
        elif activity_type == ActivityType.FEATURE_ADD and score > 0:
            score *= 1.2

        return _clamp(score)

    def solution_importance(self, lowered: str, activity_type: ActivityType) -> float:
        score = 15 * _count(lowered, INNOVATION_KEYWORDS)
        score += 12 * _count(lowered, GENERICITY_KEYWORDS)
        score += 10 * _count(lowered, COMPLETENESS_KEYWORDS)
        score += 18 * _count(lowered, UX_KEYWORDS)
        score += 20 * _count(lowered, I18N_KEYWORDS)

        if activity_type == ActivityType.SOLUTION_DESIGN:
            score *= 1.4
        elif activity_type == ActivityType.FEATURE_ADD:
            score *= 1.2

        return _clamp(score)

    def reusability(self, text: str, lowered: str) -> float:
        score = 15 * _count(lowered, ABSTRACTION_KEYWORDS)

        if "/**" in text or "///" in text or "```" in text:
            score += 20

        score += 12 * _count(lowered, VERSATILITY_KEYWORDS)

        if "```" in text or "example" in lowered:
            score += 15

        for pattern in REUSABLE_PATTERNS:
            if pattern.matches(text, lowered) >= 2:
                score += pattern.score

        return _clamp(score)
