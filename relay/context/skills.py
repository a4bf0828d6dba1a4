"""
Skills loader.

A skill is a directory containing ``SKILL.md``: YAML frontmatter followed
by markdown instructions. Skills marked ``always: true`` are injected into
the system prompt in full; all others are advertised in an XML summary so
the model can read them on demand with ``read_file``.

Frontmatter example::

    ---
    name: github
    description: Work with GitHub through the gh CLI
    always: false
    requires:
      bins: [gh]
      env: [GITHUB_TOKEN]
    ---
"""

import json
import os
import shutil
from dataclasses import dataclass, field
from html import escape
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
import yaml

logger = structlog.get_logger(__name__)


@dataclass
class SkillInfo:
    name: str
    path: Path
    source: str  # "workspace" | "builtin"
    description: str = ""
    always: bool = False
    required_bins: List[str] = field(default_factory=list)
    required_env: List[str] = field(default_factory=list)

    def missing_requirements(self) -> List[str]:
        missing = [f"CLI: {b}" for b in self.required_bins if shutil.which(b) is None]
        missing += [f"ENV: {e}" for e in self.required_env if not os.environ.get(e)]
        return missing

    @property
    def available(self) -> bool:
        return not self.missing_requirements()


def split_frontmatter(content: str) -> tuple:
    """Return (frontmatter dict, body). Missing or invalid frontmatter yields {}."""
    if not content.startswith("---"):
        return {}, content
    end = content.find("\n---", 3)
    if end == -1:
        return {}, content
    raw = content[3:end]
    body = content[end + 4:].lstrip("\n")
    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as e:
        logger.warning("Invalid skill frontmatter", error=str(e))
        return {}, body
    return (data if isinstance(data, dict) else {}), body


def _metadata_block(frontmatter: Dict[str, Any]) -> Dict[str, Any]:
    metadata = frontmatter.get("metadata")
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except ValueError:
            return {}
    if not isinstance(metadata, dict):
        return {}
    block = metadata.get("relay") or {}
    return block if isinstance(block, dict) else {}


class SkillsLoader:
    """Discovers skills in the workspace and an optional builtin directory."""

    def __init__(self, workspace: Path, builtin_dir: Optional[Path] = None):
        self.workspace_skills = workspace / "skills"
        self.builtin_dir = builtin_dir

    def _scan(self, root: Optional[Path], source: str) -> List[SkillInfo]:
        if root is None or not root.is_dir():
            return []
        skills = []
        for entry in sorted(root.iterdir()):
            skill_file = entry / "SKILL.md"
            if entry.is_dir() and skill_file.is_file():
                skills.append(self._parse(entry.name, skill_file, source))
        return skills

    def _parse(self, name: str, path: Path, source: str) -> SkillInfo:
        frontmatter, _ = split_frontmatter(path.read_text(encoding="utf-8"))
        meta = _metadata_block(frontmatter)
        requires = frontmatter.get("requires") or meta.get("requires") or {}
        return SkillInfo(
            name=name,
            path=path,
            source=source,
            description=str(frontmatter.get("description") or ""),
            always=bool(frontmatter.get("always") or meta.get("always")),
            required_bins=list(requires.get("bins") or []),
            required_env=list(requires.get("env") or []),
        )

    def list_skills(self, filter_unavailable: bool = False) -> List[SkillInfo]:
        """Workspace skills shadow builtin skills of the same name."""
        skills = {s.name: s for s in self._scan(self.builtin_dir, "builtin")}
        skills.update({s.name: s for s in self._scan(self.workspace_skills, "workspace")})
        result = [skills[name] for name in sorted(skills)]
        if filter_unavailable:
            result = [s for s in result if s.available]
        return result

    def load_skill(self, name: str) -> Optional[str]:
        for skill in self.list_skills():
            if skill.name == name:
                return skill.path.read_text(encoding="utf-8")
        return None

    def get_always_skills(self) -> List[str]:
        return [s.name for s in self.list_skills(filter_unavailable=True) if s.always]

    def load_skills_for_context(self, names: List[str]) -> str:
        parts = []
        for name in names:
            content = self.load_skill(name)
            if content is None:
                continue
            _, body = split_frontmatter(content)
            parts.append(f"### Skill: {name}\n\n{body.strip()}")
        return "\n\n---\n\n".join(parts)

    def build_skills_summary(self) -> str:
        skills = self.list_skills()
        if not skills:
            return ""
        lines = ["<skills>"]
        for skill in skills:
            available = skill.available
            lines.append(f'  <skill available="{str(available).lower()}">')
            lines.append(f"    <name>{escape(skill.name)}</name>")
            lines.append(f"    <description>{escape(skill.description or skill.name)}</description>")
            lines.append(f"    <location>{escape(str(skill.path))}</location>")
            if not available:
                lines.append(f"    <requires>{escape(', '.join(skill.missing_requirements()))}</requires>")
            lines.append("  </skill>")
        lines.append("</skills>")
        return "\n".join(lines)

    def skill_hints(self) -> List[str]:
        """Hints appended to the system instructions for every context build."""
        hints = []
        always = self.load_skills_for_context(self.get_always_skills())
        if always:
            hints.append(f"# Active Skills\n\n{always}")
        summary = self.build_skills_summary()
        if summary:
            hints.append(
                "# Skills\n\nThe following skills extend your capabilities. "
                "To use a skill, read its SKILL.md file using the read_file tool.\n\n" + summary
            )
        return hints
