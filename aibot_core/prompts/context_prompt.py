"""工作项上下文提示词构造。

build_context_prompt 是纯函数：相同输入得到完全相同的文本，且不会抛异常。
缺失的可选字段直接省略整行，不输出空标签。
"""

import re
from typing import Dict, List, Optional, Sequence

from aibot_core.domain.work_items import WorkItemDetails, WorkItemRef
from aibot_core.prompts import load_prompt


NO_CONTEXT_NOTICE = (
    "NOTE: There is currently no work item being viewed. "
    "The user may need to navigate to a work item in Azure DevOps for context-specific assistance."
)

CURRENT_SECTION = "## CURRENT WORK ITEM"
PARENT_SECTION = "## PARENT WORK ITEM"
CHILDREN_SECTION = "## CHILD WORK ITEMS"
SUMMARY_SECTION = "## RELATIONSHIP SUMMARY"

PARENT_SUMMARY_LENGTH = 200

_HTML_TAG_RE = re.compile(r"<[^>]*>?")


def strip_html(html: Optional[str]) -> str:
    if not html:
        return ""
    return _HTML_TAG_RE.sub("", str(html))


def normalize_escaped_newlines(text: str) -> str:
    """把上游编码残留的字面量 "\\n" 还原为真实换行。"""

    if not text:
        return text
    return text.replace("\\n", "\n")


def is_context_prompt(text: Optional[str]) -> bool:
    """判断提示词是否携带了当前工作项上下文。"""

    return bool(text) and CURRENT_SECTION in text and NO_CONTEXT_NOTICE not in text


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def _current_section(d: WorkItemDetails) -> List[str]:
    lines = [
        CURRENT_SECTION,
        f"ID: {d.id}",
        f"Title: {d.title}",
        f"Type: {d.type}",
        f"State: {d.state}",
    ]
    if d.project_name:
        lines.append(f"Project: {d.project_name}")
    if d.priority is not None:
        lines.append(f"Priority: {d.priority}")
    if d.story_points is not None:
        lines.append(f"Story Points: {d.story_points}")
    if d.effort is not None:
        lines.append(f"Effort: {d.effort}")

    estimates = [
        ("Original", d.original_estimate),
        ("Remaining", d.remaining_work),
        ("Completed", d.completed_work),
    ]
    if any(value is not None for _, value in estimates):
        lines.append("Estimates:")
        lines.extend(f"  - {label}: {value}" for label, value in estimates if value is not None)

    if d.assigned_to:
        lines.append(f"Assigned To: {d.assigned_to}")
    if d.created_by:
        lines.append(f"Created By: {d.created_by}")
    if d.area_path:
        lines.append(f"Area Path: {d.area_path}")
    if d.iteration_path:
        lines.append(f"Iteration Path: {d.iteration_path}")

    description = strip_html(d.description)
    if description:
        lines += ["", "Description:", description]
    criteria = strip_html(d.acceptance_criteria)
    if criteria:
        lines += ["", "Acceptance Criteria:", criteria]
    return lines


def _parent_section(d: WorkItemDetails) -> List[str]:
    lines = [
        PARENT_SECTION,
        f"ID: {d.id}",
        f"Title: {d.title}",
        f"Type: {d.type}",
        f"State: {d.state}",
    ]
    if d.story_points is not None:
        lines.append(f"Story Points: {d.story_points}")
    description = strip_html(d.description)
    if description:
        summary = description[:PARENT_SUMMARY_LENGTH]
        if len(description) > PARENT_SUMMARY_LENGTH:
            summary += "..."
        lines += ["", f"Description Summary: {summary}"]
    return lines


def _children_section(children: Sequence[WorkItemDetails]) -> List[str]:
    lines = [f"{CHILDREN_SECTION} ({len(children)})"]
    for index, c in enumerate(children, start=1):
        lines += [
            "",
            f"### Child {index}:",
            f"ID: {c.id}",
            f"Title: {c.title}",
            f"Type: {c.type}",
            f"State: {c.state}",
        ]
        if c.assigned_to:
            lines.append(f"Assigned To: {c.assigned_to}")
        if c.story_points is not None:
            lines.append(f"Story Points: {c.story_points}")
        if c.effort is not None:
            lines.append(f"Effort: {c.effort}")
        if c.original_estimate is not None:
            lines.append(f"Original Estimate: {c.original_estimate}")
        if c.remaining_work is not None:
            lines.append(f"Remaining Work: {c.remaining_work}")
    return lines


def _summary_section(
    current: WorkItemDetails,
    parent: Optional[WorkItemDetails],
    children: Sequence[WorkItemDetails],
) -> List[str]:
    kind = current.type.lower()
    lines = [SUMMARY_SECTION]
    if parent is not None:
        lines.append(f'- This {kind} is part of the {parent.type.lower()} "{parent.title}"')
    else:
        lines.append(f"- This {kind} does not have a parent work item")

    if not children:
        lines.append(f"- This {kind} does not have any child items")
        return lines

    lines.append(f"- This {kind} has {_plural(len(children), 'child item')}")
    # dict 保持插入顺序，输出稳定
    type_counts: Dict[str, int] = {}
    state_counts: Dict[str, int] = {}
    for c in children:
        type_counts[c.type] = type_counts.get(c.type, 0) + 1
        state_counts[c.state] = state_counts.get(c.state, 0) + 1
    lines.extend(f"  - {_plural(count, t.lower())}" for t, count in type_counts.items())
    lines.append("- Child items by state:")
    lines.extend(f"  - {count} in {state} state" for state, count in state_counts.items())
    return lines


def build_context_prompt(
    current: Optional[WorkItemRef],
    parent: Optional[WorkItemRef] = None,
    children: Sequence[WorkItemRef] = (),
    language: str = "en",
) -> str:
    """根据工作项层级构造 system 提示词。

    current 为 None 时只返回角色设定与 NO_CONTEXT_NOTICE。
    """

    blocks = [load_prompt("context_preamble", language)]
    if current is None:
        blocks.append(NO_CONTEXT_NOTICE)
        return "\n\n".join(blocks) + "\n"

    current_details = WorkItemDetails.from_work_item(current)
    parent_details = WorkItemDetails.from_work_item(parent) if parent is not None else None
    child_details = [WorkItemDetails.from_work_item(c) for c in children]

    blocks.append("\n".join(_current_section(current_details)))
    if parent_details is not None:
        blocks.append("\n".join(_parent_section(parent_details)))
    if child_details:
        blocks.append("\n".join(_children_section(child_details)))
    blocks.append("\n".join(_summary_section(current_details, parent_details, child_details)))
    blocks.append(load_prompt("response_guidelines", language))
    return "\n\n".join(blocks)
