# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - PROMPT TEMPLATES
# =============================================================================
"""
Prompt Templates

Fixed prompts sent to the LLM CLI by the Planner, Enforcer, Strategist
and Troubleshooter. Each builder embeds the repository documents it is
given in fenced sections.
"""

from datetime import date
from typing import Optional

FENCE = "```"

DOCUMENT_ONLY_RULES = f"""IMPORTANT:
- Output ONLY the raw content of the updated file.
- Do NOT use markdown code blocks ({FENCE}).
- Do NOT include any conversational text.
- The output must start directly with the file content."""


def _section(title: str, content: str) -> str:
    return f"### {title}\n{FENCE}\n{content}\n{FENCE}"


def build_planner_prompt(goals: str, tasks: str, context_map: str, agents: str) -> str:
    return f"""You are the Planner for an autonomous development system.

Analyze the following files:

{_section("GOALS.md", goals)}

{_section("TASKS.md", tasks)}

{_section("CONTEXT_MAP.md", context_map)}

{_section("AGENTS.md", agents)}

Generate a detailed technical plan for the next task to work on.
The plan should:
1. Select the highest priority task from TASKS.md
2. Break it down into concrete implementation steps
3. Reference relevant parts of CONTEXT_MAP.md
4. Consider lessons learned from AGENTS.md
5. Be specific enough for Jules to execute

Output the plan in markdown format."""


def build_audit_prompt(constitution: str, tasks: str, diff: str) -> str:
    return f"""You are the Enforcer for an autonomous development system.

Your task is to review the code changes in this pull request against the repository's CONSTITUTION.md and ensure the intended task has been completed correctly as per TASKS.md.

{_section("CONSTITUTION.md", constitution)}

{_section("TASKS.md", tasks)}

{_section("PR Diff", diff)}

Please:
1. Verify that the changes comply with ALL rules in CONSTITUTION.md.
2. Identify the task(s) from TASKS.md this PR is intended to complete.
3. Verify that the task(s) have been implemented correctly and completely.
4. If there are code violations or the task implementation is incorrect/incomplete, list them as violations.
5. If everything is compliant and the task is fully satisfied, respond with compliant: true.

Respond in JSON format:
{{
  "compliant": true/false,
  "violations": ["reason/violation 1", "reason/violation 2", ...]
}}"""


def build_lessons_prompt(agents: str, merge_diff: str, today: Optional[date] = None) -> str:
    today = today or date.today()
    return f"""You are the Strategist for an autonomous development system.

A PR has just been merged. Analyze the changes and extract lessons learned.

{_section("Current AGENTS.md", agents)}

{_section("Merged Changes", merge_diff)}

Review the merged changes for patterns, challenges, or insights.
Update AGENTS.md with new lessons learned.
Format as a new entry dated {today.isoformat()}.

{DOCUMENT_ONLY_RULES}
- If no new lessons are found, output the original content of AGENTS.md exactly as is."""


def build_tasks_prompt(tasks: str, merge_diff: str) -> str:
    return f"""You are the Strategist for an autonomous development system.

A task has been completed and merged. Update TASKS.md by:
1. Reading the current TASKS.md.
2. Reading the merge diff to identify the completed task.
3. Marking the completed task as complete (move to COMPLETED WORK section).
4. Working out if any new tasks need to be added based on the completed work.
5. Re-ordering the tasks list based on priority.

{_section("Current TASKS.md", tasks)}

{_section("Merged Changes", merge_diff)}

{DOCUMENT_ONLY_RULES}"""


def build_troubleshooter_prompt(question: str, context_map: str, constitution: str) -> str:
    return f"""You are the Troubleshooter for an autonomous development system.

Jules has encountered a blocker and needs technical input.

Analyze the codebase and provide a definitive technical answer to the following question:

{question}

{_section("CONTEXT_MAP.md", context_map)}

{_section("CONSTITUTION.md", constitution)}

Provide a clear, actionable answer that Jules can use to proceed."""


def strip_code_fence(text: str) -> str:
    """Remove a markdown code fence wrapping the whole text, if present."""
    stripped = text.strip()
    if not stripped.startswith(FENCE):
        return text
    lines = stripped.splitlines()
    if len(lines) < 2 or lines[-1].strip() != FENCE:
        return text
    return "\n".join(lines[1:-1]) + "\n"


__all__ = [
    "build_planner_prompt",
    "build_audit_prompt",
    "build_lessons_prompt",
    "build_tasks_prompt",
    "build_troubleshooter_prompt",
    "strip_code_fence",
]
