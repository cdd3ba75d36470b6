"""
Typed, versioned optimization payloads.

A payload has two mandatory sections, ``content`` (what the subject looks
like now) and ``analysis`` (its current quality score), plus a ``system``
section stamped by the dispatcher. Payloads are parsed with ``from_dict``
both on the way in and when a job row is read back, so a stored blob with
the wrong shape or version fails loudly instead of reaching the
automation service.
"""

import platform
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from optiflow.core.constants import PAYLOAD_VERSION, SCORE_MIN, SCORE_MAX, APP_VERSION
from optiflow.core.error_codes import ValidationError

_RESERVED_KEYS = {'version', 'content', 'analysis', 'system'}


def _require_section(data: dict, name: str) -> dict:
    section = data.get(name)
    if not isinstance(section, dict):
        raise ValidationError(f"Missing payload section: {name}")
    return section


def _require_field(section: dict, section_name: str, name: str):
    if name not in section or section[name] is None:
        raise ValidationError(f"Missing field in {section_name}: {name}")
    return section[name]


def parse_score(value: Any, name: str = "score") -> int:
    """Coerce a score to int and check it is within 0–100."""
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    try:
        score = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    if score < SCORE_MIN or score > SCORE_MAX:
        raise ValidationError(f"{name} must be between {SCORE_MIN} and {SCORE_MAX}, got {score}")
    return score


@dataclass
class SubjectContent:
    title: str
    body: str
    meta: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "SubjectContent":
        title = _require_field(data, 'content', 'title')
        body = _require_field(data, 'content', 'body')
        meta = _require_field(data, 'content', 'meta')
        if not str(body).strip():
            raise ValidationError("Subject content is empty")
        if not isinstance(meta, dict):
            raise ValidationError("content.meta must be an object")
        return cls(title=str(title), body=str(body), meta=dict(meta))

    def to_dict(self) -> dict:
        return {'title': self.title, 'body': self.body, 'meta': dict(self.meta)}


@dataclass
class ScoreAnalysis:
    score: int
    keyword: str
    checks: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "ScoreAnalysis":
        score = parse_score(_require_field(data, 'analysis', 'score'))
        keyword = _require_field(data, 'analysis', 'keyword')
        checks = _require_field(data, 'analysis', 'checks')
        if not isinstance(checks, dict):
            raise ValidationError("analysis.checks must be an object")
        return cls(score=score, keyword=str(keyword), checks=dict(checks))

    def to_dict(self) -> dict:
        return {'score': self.score, 'keyword': self.keyword, 'checks': dict(self.checks)}


@dataclass
class SystemInfo:
    site_url: str
    site_name: str
    app_version: str = APP_VERSION
    python_version: str = field(default_factory=platform.python_version)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def from_dict(cls, data: dict) -> "SystemInfo":
        return cls(
            site_url=str(data.get('site_url', '')),
            site_name=str(data.get('site_name', '')),
            app_version=str(data.get('app_version', '')),
            python_version=str(data.get('python_version', '')),
            timestamp=str(data.get('timestamp', '')),
        )

    def to_dict(self) -> dict:
        return {
            'site_url': self.site_url,
            'site_name': self.site_name,
            'app_version': self.app_version,
            'python_version': self.python_version,
            'timestamp': self.timestamp,
        }


@dataclass
class OptimizationPayload:
    content: SubjectContent
    analysis: ScoreAnalysis
    system: Optional[SystemInfo] = None
    extra: dict = field(default_factory=dict)
    version: int = PAYLOAD_VERSION

    @classmethod
    def from_dict(cls, data: Any) -> "OptimizationPayload":
        if not isinstance(data, dict):
            raise ValidationError("Payload must be an object")

        version = data.get('version', PAYLOAD_VERSION)
        if version != PAYLOAD_VERSION:
            raise ValidationError(f"Unsupported payload version: {version!r}")

        content = SubjectContent.from_dict(_require_section(data, 'content'))
        analysis = ScoreAnalysis.from_dict(_require_section(data, 'analysis'))
        system = None
        if isinstance(data.get('system'), dict):
            system = SystemInfo.from_dict(data['system'])

        extra = {k: v for k, v in data.items() if k not in _RESERVED_KEYS}
        return cls(content=content, analysis=analysis, system=system,
                   extra=extra, version=version)

    def with_system(self, system: SystemInfo) -> "OptimizationPayload":
        return OptimizationPayload(content=self.content, analysis=self.analysis,
                                   system=system, extra=dict(self.extra),
                                   version=self.version)

    def to_dict(self) -> dict:
        data = dict(self.extra)
        data['version'] = self.version
        data['content'] = self.content.to_dict()
        data['analysis'] = self.analysis.to_dict()
        if self.system is not None:
            data['system'] = self.system.to_dict()
        return data
