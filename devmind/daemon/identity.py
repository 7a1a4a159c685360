"""Project identity: path normalization, root discovery and fingerprints.

This module implements:
- Idempotent path normalization (separators, case folding)
- Bounded upward walk to the nearest project-root marker
- A stable project fingerprint from remote URL, manifest and path
- Manifest-based language and framework detection
"""

import hashlib
import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger

from .config import IdentityConfig


FINGERPRINT_MANIFESTS = [
    "package.json",
    "pyproject.toml",
    "go.mod",
    "Cargo.toml",
    "pom.xml",
    "build.gradle",
    "composer.json",
    "Gemfile",
]

# manifest -> language, in detection priority order
MANIFEST_LANGUAGES: List[Tuple[str, str]] = [
    ("package.json", "javascript"),
    ("pyproject.toml", "python"),
    ("setup.py", "python"),
    ("requirements.txt", "python"),
    ("go.mod", "go"),
    ("Cargo.toml", "rust"),
    ("pom.xml", "java"),
    ("build.gradle", "java"),
    ("composer.json", "php"),
    ("Gemfile", "ruby"),
    ("mix.exs", "elixir"),
]

# substring in manifest -> framework
FRAMEWORK_HINTS: Dict[str, List[Tuple[str, str]]] = {
    "javascript": [
        ('"next"', "nextjs"),
        ('"nuxt"', "nuxt"),
        ('"react"', "react"),
        ('"vue"', "vue"),
        ('"@angular/core"', "angular"),
        ('"@nestjs/core"', "nestjs"),
        ('"express"', "express"),
    ],
    "python": [
        ("django", "django"),
        ("fastapi", "fastapi"),
        ("flask", "flask"),
    ],
    "go": [
        ("gin-gonic/gin", "gin"),
        ("gorilla/mux", "gorilla"),
        ("labstack/echo", "echo"),
    ],
    "rust": [
        ("actix-web", "actix"),
        ("warp", "warp"),
        ("rocket", "rocket"),
    ],
}

_REMOTE_URL = re.compile(r'^\s*url\s*=\s*(\S+)\s*$', re.MULTILINE)


def to_unix_path(path: str) -> str:
    return path.replace("\\", "/")


def read_git_remote(root: str) -> Optional[str]:
    """Read the first remote URL from `.git/config`, preferring origin."""
    config_path = Path(root) / ".git" / "config"
    try:
        text = config_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None

    origin = re.search(r'\[remote "origin"\]([^\[]*)', text)
    block = origin.group(1) if origin else text
    match = _REMOTE_URL.search(block)
    return match.group(1) if match else None


@dataclass
class ProjectDescriptor:
    """Everything identity resolution knows about a project root."""
    root: str
    name: str
    fingerprint: str
    manifest: Optional[str] = None
    language: str = "unknown"
    framework: Optional[str] = None
    remote_url: Optional[str] = None
    markers: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'root': self.root,
            'name': self.name,
            'fingerprint': self.fingerprint,
            'manifest': self.manifest,
            'language': self.language,
            'framework': self.framework,
            'remote_url': self.remote_url,
            'markers': list(self.markers),
        }


class IdentityResolver:
    """Resolves any path inside a project to one canonical identity."""

    def __init__(self,
                 config: Optional[IdentityConfig] = None,
                 remote_lookup: Optional[Callable[[str], Optional[str]]] = read_git_remote):
        """
        Initialize resolver.

        Args:
            config: Marker list, walk depth and case folding
            remote_lookup: Returns the VCS remote URL for a root, or None
        """
        self.config = config or IdentityConfig()
        self.remote_lookup = remote_lookup

    def normalize(self, path: str) -> str:
        """Absolute path with `/` separators, case-folded where the platform ignores case."""
        unified = to_unix_path(os.path.abspath(os.path.expanduser(to_unix_path(str(path)))))
        if self.config.case_insensitive:
            unified = unified.lower()
        return unified

    def resolve_root(self, path: str) -> str:
        """Walk upward to the nearest directory holding a root marker."""
        normalized = self.normalize(path)
        try:
            current = Path(os.path.abspath(os.path.expanduser(to_unix_path(str(path)))))
            if current.is_file():
                current = current.parent

            for _ in range(self.config.max_depth):
                for marker in self.config.markers:
                    if (current / marker).exists():
                        return self.normalize(str(current))

                parent = current.parent
                if parent == current:
                    break
                current = parent

        except OSError as e:
            logger.debug(f"Root walk failed for {path}: {e}")

        return normalized

    def find_manifest(self, root: str) -> Optional[str]:
        """First fingerprint manifest present in `root`."""
        for name in FINGERPRINT_MANIFESTS:
            try:
                if (Path(root) / name).is_file():
                    return name
            except OSError:
                continue
        return None

    def fingerprint(self, path: str, remote_url: Optional[str] = None) -> str:
        """Stable 16-hex-char digest identifying the project containing `path`."""
        root = self.resolve_root(path)
        components = []

        if remote_url is None and self.remote_lookup is not None:
            try:
                remote_url = self.remote_lookup(root)
            except Exception as e:
                logger.debug(f"Remote lookup failed for {root}: {e}")
                remote_url = None
        if remote_url:
            components.append(f"git:{remote_url.strip()}")

        manifest = self.find_manifest(root)
        if manifest:
            try:
                content = (Path(root) / manifest).read_bytes()
                digest = hashlib.md5(content).hexdigest()[:8]
                components.append(f"config:{manifest}:{digest}")
            except OSError as e:
                logger.debug(f"Could not read {manifest} in {root}: {e}")

        components.append(f"path:{root}")
        return hashlib.sha256("|".join(components).encode("utf-8")).hexdigest()[:16]

    def detect_language(self, root: str) -> Tuple[str, Optional[str], Optional[str]]:
        """Return (language, framework, manifest) detected from manifests in `root`."""
        for manifest, language in MANIFEST_LANGUAGES:
            manifest_path = Path(root) / manifest
            try:
                if not manifest_path.is_file():
                    continue
                content = manifest_path.read_text(encoding="utf-8", errors="replace")
            except OSError:
                continue

            hints_key = language
            if manifest == "package.json":
                language = self._js_language(content)
            else:
                content = content.lower()

            framework = None
            for hint, name in FRAMEWORK_HINTS.get(hints_key, []):
                if hint in content:
                    framework = name
                    break
            return language, framework, manifest

        return "unknown", None, None

    def describe(self, path: str) -> ProjectDescriptor:
        """Full identity of the project containing `path`."""
        root = self.resolve_root(path)
        remote_url = None
        if self.remote_lookup is not None:
            try:
                remote_url = self.remote_lookup(root)
            except Exception as e:
                logger.debug(f"Remote lookup failed for {root}: {e}")

        language, framework, manifest = self.detect_language(root)
        markers = []
        for marker in self.config.markers:
            try:
                if (Path(root) / marker).exists():
                    markers.append(marker)
            except OSError:
                continue

        return ProjectDescriptor(
            root=root,
            name=os.path.basename(root.rstrip("/")) or root,
            # Empty string skips a second remote lookup
            fingerprint=self.fingerprint(root, remote_url=remote_url or ""),
            manifest=manifest,
            language=language,
            framework=framework,
            remote_url=remote_url,
            markers=markers,
        )

    def _js_language(self, package_json: str) -> str:
        try:
            data = json.loads(package_json)
        except ValueError:
            return "javascript"
        deps = {}
        for section in ("dependencies", "devDependencies"):
            if isinstance(data.get(section), dict):
                deps.update(data[section])
        return "typescript" if "typescript" in deps else "javascript"
