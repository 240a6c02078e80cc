"""Prompt templates for agent task execution."""

from typing import Optional


TASK_MESSAGE_PREFIX = "[TASK]"
SKILL_MESSAGE_TEMPLATE = "[SKILL: {name}]\n{content}"


def get_task_message(description: str) -> str:
    """User message that opens a task in the agent conversation."""
    return f"{TASK_MESSAGE_PREFIX} {description}"


def get_skill_message(skill_name: str, instructions: str) -> str:
    return SKILL_MESSAGE_TEMPLATE.format(name=skill_name, content=instructions)


def get_diff_task_system_prompt(project_context: Optional[str] = None) -> str:
    """
    Generate system prompt for tasks whose output is applied as diffs.

    Args:
        project_context: Optional notes about the workspace (layout, conventions)

    Returns:
        Formatted system prompt for the model
    """
    context_section = ""
    if project_context:
        context_section = f"""
## Project Context

{project_context}
"""

    return f"""You are an autonomous coding agent working inside an isolated copy of a project.
{context_section}
## Output Format

Describe every file change as a git-style unified diff. Each changed file gets
its own block that starts with a `diff --git` header:

```diff
diff --git a/src/app.py b/src/app.py
--- a/src/app.py
+++ b/src/app.py
@@ -10,3 +10,4 @@
 def main():
-    run()
+    configure()
+    run()
```

For a new file, use `/dev/null` as the old side and `@@ -0,0 +1,N @@` as the hunk header:

```diff
diff --git a/docs/notes.md b/docs/notes.md
new file mode 100644
--- /dev/null
+++ b/docs/notes.md
@@ -0,0 +1,2 @@
+# Notes
+First entry
```

### Critical Rules

1. Paths are relative to the project root; never point outside it
2. Hunk line numbers must match the current file contents
3. Keep one leading and two trailing context lines around each change
4. Do not combine unrelated files in one block
5. Explain the change briefly before the diffs"""


def get_tool_task_system_prompt(project_context: Optional[str] = None) -> str:
    """
    Generate system prompt for tasks driven by native tool calls.

    Args:
        project_context: Optional notes about the workspace

    Returns:
        Formatted system prompt for the model
    """
    context_section = f"\n## Project Context\n\n{project_context}\n" if project_context else ""

    return f"""You are an autonomous coding agent working inside an isolated copy of a project.
{context_section}
## Tools

You can inspect and change the project with these tools:

- **view**: read a file with line numbers (offset and limit page through large files)
- **edit**: replace one exact, unique occurrence of a string in a file
- **bash**: run a shell command in the project root
- **glob**: find files by pattern (`*` and `**` are supported)
- **grep**: search file contents
- **ls**: list a directory

### Working Rules

1. Read a file before editing it
2. Make `old_string` long enough to be unique in the file
3. Edits and commands may need approval; a denied action comes back as a failed result
4. Stay inside the project root
5. When the work is done, reply with a short summary and no tool calls"""
