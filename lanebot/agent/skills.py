"""
技能快照模块 - 列出工作区里可用的技能（Skills）。

技能就是 workspace/skills/{name}/SKILL.md，frontmatter 中的 description 作为摘要。
新会话开始时生成一次快照写进会话记录的 skillsSnapshot，
同一会话后续轮次直接复用快照拼进 system prompt，不再扫描目录。

【Java 开发者类比】
    类似 SPI 的 ServiceLoader 扫描结果缓存。
"""

import re
from pathlib import Path
from typing import Any

from lanebot.utils.helpers import now_ms

_FRONTMATTER_RE = re.compile(r"^---\n(.*?)\n---\n", re.DOTALL)


def _skill_description(skill_file: Path) -> str:
    content = skill_file.read_text(encoding="utf-8")
    match = _FRONTMATTER_RE.match(content)
    if match:
        for line in match.group(1).split("\n"):
            if line.startswith("description:"):
                return line.split(":", 1)[1].strip().strip("\"'")
    return skill_file.parent.name


def list_skills(workspace: Path) -> list[dict[str, str]]:
    """
    扫描 workspace/skills 下所有带 SKILL.md 的目录。

    返回:
        [{"name", "description", "path"}]，按名称排序
    """
    skills_dir = workspace / "skills"
    if not skills_dir.exists():
        return []
    skills = []
    for skill_dir in sorted(skills_dir.iterdir()):
        skill_file = skill_dir / "SKILL.md"
        if skill_dir.is_dir() and skill_file.exists():
            skills.append({
                "name": skill_dir.name,
                "description": _skill_description(skill_file),
                "path": str(skill_file),
            })
    return skills


def build_skills_snapshot(workspace: Path) -> dict[str, Any]:
    """
    生成技能快照。

    返回:
        {"prompt": system prompt 片段, "skills": [{"name"}], "builtAt": 毫秒时间戳}
    """
    skills = list_skills(workspace)
    lines = []
    if skills:
        lines.append("# Skills\n\nRead a skill's SKILL.md with read_file before using it.\n")
        for s in skills:
            lines.append(f"- {s['name']}: {s['description']} ({s['path']})")
    return {
        "prompt": "\n".join(lines),
        "skills": [{"name": s["name"]} for s in skills],
        "builtAt": now_ms(),
    }
