from __future__ import annotations


_PROMISE_INSTRUCTIONS = (
    "IMPORTANT: When you finish this task, you MUST publish a completion promise.\n"
    'Run this shell command: coders promise "Brief summary of what you accomplished"\n'
    "\n"
    "This notifies the orchestrator and dashboard that your work is complete.\n"
    'If you get blocked, use: coders promise "Reason for being blocked" --status blocked\n'
)


def task_prompt(task: str) -> str:
    """Initial prompt typed into a freshly spawned tool."""
    return f"TASK: {task}\n\nYou have full permissions. Complete the task.\n\n" + _PROMISE_INSTRUCTIONS


def restart_prompt(task: str, restart_count: int) -> str:
    return (
        f"TASK: {task}\n\n"
        f"NOTE: This is restart #{int(restart_count)}. The previous session crashed unexpectedly.\n"
        "Please continue working on the task. Check git status to see what was done previously.\n\n"
        "You have full permissions. Complete the task.\n\n" + _PROMISE_INSTRUCTIONS
    )


ORCHESTRATOR_PROMPT = """\
This is the orchestrator session. It coordinates other coder sessions with:

  coders spawn <tool> --task "..."   spawn a new coder session
  coders list                        list sessions
  coders promises                    show which sessions published a completion promise
  coders kill <session>              kill a session
  coders loop --todolist FILE        work through a checklist one session at a time

Start by spawning your first session or listing existing ones.
"""
