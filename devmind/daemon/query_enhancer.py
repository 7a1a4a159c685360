"""Query understanding: synonym expansion and intent detection."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Pattern, Tuple


MAX_SYNONYMS_PER_WORD = 3
MAX_EXTRA_TERMS = 5


class QueryIntent(str, Enum):
    DOCUMENTATION = "documentation"
    TEST_SEARCH = "test_search"
    CONFIG_SEARCH = "config_search"
    ERROR_SOLUTION = "error_solution"
    CODE_SEARCH = "code_search"
    FEATURE_IMPLEMENTATION = "feature_implementation"
    BUG_FIX = "bug_fix"
    API_REFERENCE = "api_reference"
    DATABASE_QUERY = "database_query"
    AUTHENTICATION = "authentication"
    GENERAL = "general"


# First match wins
INTENT_PATTERNS: List[Tuple[QueryIntent, Pattern]] = [
    (QueryIntent.DOCUMENTATION, re.compile(r'文档|说明|readme|doc|guide|教程|帮助', re.IGNORECASE)),
    (QueryIntent.TEST_SEARCH, re.compile(r'测试|test|spec|单元测试|集成测试', re.IGNORECASE)),
    (QueryIntent.CONFIG_SEARCH, re.compile(r'配置|config|设置|settings|环境变量', re.IGNORECASE)),
    (QueryIntent.ERROR_SOLUTION, re.compile(r'错误|异常|error|exception|bug|修复|fix|解决', re.IGNORECASE)),
    (QueryIntent.CODE_SEARCH, re.compile(r'函数|方法|类|class|function|代码|实现|logic', re.IGNORECASE)),
    (QueryIntent.FEATURE_IMPLEMENTATION, re.compile(r'实现|功能|feature|implement|添加|新增', re.IGNORECASE)),
    (QueryIntent.BUG_FIX, re.compile(r'修复|fix|bug|错误|异常|解决', re.IGNORECASE)),
    (QueryIntent.API_REFERENCE, re.compile(r'api|接口|reference|endpoint', re.IGNORECASE)),
    (QueryIntent.DATABASE_QUERY, re.compile(r'database|db|sql|query|数据库|查询', re.IGNORECASE)),
    (QueryIntent.AUTHENTICATION, re.compile(r'auth|login|认证|登录|jwt|oauth|权限', re.IGNORECASE)),
]

SYNONYMS: Dict[str, List[str]] = {
    "auth": ["authentication", "login", "signin"],
    "authentication": ["auth", "login", "signin"],
    "login": ["signin", "auth", "authentication"],
    "authorization": ["auth", "permission", "access control"],
    "认证": ["auth", "authentication", "login"],
    "登录": ["login", "signin", "auth"],
    "database": ["db", "sql", "query"],
    "db": ["database", "sql", "query"],
    "sql": ["database", "query", "select"],
    "mongodb": ["mongo", "nosql", "document"],
    "redis": ["cache", "key-value"],
    "数据库": ["database", "db", "sql"],
    "api": ["endpoint", "service", "request"],
    "endpoint": ["api", "route", "url"],
    "接口": ["api", "endpoint", "service"],
    "test": ["testing", "spec", "unittest"],
    "测试": ["test", "spec", "unittest"],
    "error": ["exception", "bug", "issue"],
    "exception": ["error", "bug", "crash"],
    "bug": ["error", "issue", "defect"],
    "错误": ["error", "exception", "bug"],
    "fix": ["patch", "solve", "resolve"],
    "修复": ["fix", "patch", "solve"],
    "debug": ["debugging", "troubleshoot"],
    "component": ["widget", "module"],
    "组件": ["component", "widget", "module"],
    "util": ["utility", "helper", "tool"],
    "helper": ["util", "utility"],
    "config": ["configuration", "settings", "setup"],
    "配置": ["config", "configuration", "settings"],
    "cache": ["caching", "memoize", "redis"],
    "performance": ["optimization", "latency", "speed"],
    "deploy": ["deployment", "release", "ci"],
}

QUERY_FILE_PATTERNS = [
    re.compile(r'[\w\-./\\]+\.\w{1,10}'),
    re.compile(r'"([^"]+\.\w+)"'),
    re.compile(r'`([^`]+\.\w+)`'),
]


@dataclass
class EnhancedQuery:
    original: str
    normalized: str
    enhanced: str
    intent: QueryIntent
    keywords: List[str] = field(default_factory=list)
    files: List[str] = field(default_factory=list)
    confidence: float = 0.5

    def to_dict(self) -> Dict:
        return {
            'original': self.original,
            'normalized': self.normalized,
            'enhanced': self.enhanced,
            'intent': self.intent.value,
            'keywords': list(self.keywords),
            'files': list(self.files),
            'confidence': self.confidence,
        }


def normalize_query(query: str) -> str:
    return " ".join(str(query or "").split()).lower()


def extract_query_files(query: str) -> List[str]:
    """File references in a query: bare paths, quoted and backticked names."""
    found: List[str] = []
    for pattern in QUERY_FILE_PATTERNS:
        for match in pattern.finditer(query or ""):
            value = match.group(1) if pattern.groups else match.group(0)
            value = value.strip("\"'`")
            if value and value not in found:
                found.append(value)
    return found


class QueryEnhancer:
    """Expands queries with synonyms and tags them with an intent."""

    def __init__(self, synonyms: Optional[Dict[str, List[str]]] = None):
        self.synonyms = synonyms if synonyms is not None else SYNONYMS

    def detect_intent(self, query: str) -> QueryIntent:
        for intent, pattern in INTENT_PATTERNS:
            if pattern.search(query):
                return intent
        return QueryIntent.GENERAL

    def keywords(self, normalized: str) -> List[str]:
        words = normalized.split()
        keywords: List[str] = [w for w in words if len(w) > 1]
        for word in words:
            for synonym in self.synonyms.get(word, [])[:MAX_SYNONYMS_PER_WORD]:
                if synonym not in keywords:
                    keywords.append(synonym)
        return keywords

    def enhance(self, query: str) -> EnhancedQuery:
        normalized = normalize_query(query)
        keywords = self.keywords(normalized)

        original_words = set(normalized.split())
        extra = [k for k in keywords if k not in original_words][:MAX_EXTRA_TERMS]
        enhanced = f"{normalized} {' '.join(extra)}" if extra else normalized

        word_count = len(normalized.split())
        confidence = min(0.5 + word_count * 0.1, 0.9)
        if len(keywords) > word_count * 1.5:
            confidence = min(confidence + 0.1, 1.0)

        return EnhancedQuery(
            original=query,
            normalized=normalized,
            enhanced=enhanced,
            intent=self.detect_intent(normalized),
            keywords=keywords,
            files=extract_query_files(query),
            confidence=confidence,
        )
