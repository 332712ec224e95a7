from __future__ import annotations

import json
from typing import Any, Iterable

COACH_SYSTEM_PROMPT = (
    "You are a concise developer learning coach. When asked for structured output, "
    "reply with a single JSON object and nothing else."
)


def _context_block(context: str) -> str:
    return f"Developer context:\n{context}\n\n" if context else ""


def _avoid_block(label: str, titles: Iterable[str]) -> str:
    titles = [t for t in titles if t]
    if not titles:
        return ""
    listed = "\n".join(f"- {t}" for t in titles)
    return f"Do not repeat any of these existing {label}:\n{listed}\n\n"


def _skills_block(skill_profile: Any) -> str:
    return f"Skill profile: {skill_profile}\n\n" if skill_profile else ""


def build_topic_prompt(context: str, existing_titles: Iterable[str] = (), skill_profile: Any = None) -> str:
    return (
        _context_block(context)
        + _skills_block(skill_profile)
        + _avoid_block("topics", existing_titles)
        + "Suggest ONE new learning topic. Respond as JSON: "
        '{"learningTopic": {"id": "...", "title": "...", "description": "...", "type": "concept|pattern|best-practice"}}'
    )


def build_challenge_prompt(context: str, existing_titles: Iterable[str] = (), skill_profile: Any = None) -> str:
    return (
        _context_block(context)
        + _skills_block(skill_profile)
        + _avoid_block("challenges", existing_titles)
        + "Create ONE small coding challenge. Respond as JSON: "
        '{"challenge": {"id": "...", "title": "...", "description": "...", "difficulty": "beginner|intermediate|advanced", '
        '"language": "...", "estimatedTime": "..."}}'
    )


def build_goal_prompt(context: str, existing_titles: Iterable[str] = (), skill_profile: Any = None) -> str:
    return (
        _context_block(context)
        + _skills_block(skill_profile)
        + _avoid_block("goals", existing_titles)
        + "Propose ONE daily learning goal. Respond as JSON: "
        '{"goal": {"id": "...", "title": "...", "description": "...", "reasoning": "..."}}'
    )


def build_chat_prompt(prompt: str, repos: Iterable[str] = (), use_github_tools: bool = False) -> str:
    repos = list(repos)
    if not repos or not use_github_tools:
        return prompt
    repo_list = "\n".join(f"- {r}" for r in repos)
    return f"Context: Focus on these repositories when using GitHub tools:\n{repo_list}\n\n{prompt}"


EVALUATION_SYSTEM_PROMPT = """You are a code evaluation assistant for a developer learning platform.

Decide whether the solution meets the challenge requirements and give short, encouraging,
actionable feedback without handing over the full solution.

Scoring: a correct solution has isCorrect true and a score of 100-150 (above 100 for
exceptional quality). An incorrect one has isCorrect false and a score of 0-99.

Reply EXACTLY in this format, JSON first:

```json
{"isCorrect": true, "score": 0, "strengths": ["..."], "improvements": ["..."], "nextSteps": ["..."]}
```

---FEEDBACK---
One encouraging sentence of at most 20 words. No markdown, code or lists.
---END FEEDBACK---"""


def _test_cases(raw: Any) -> list[dict[str, Any]]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return []
    return [case for case in raw or () if isinstance(case, dict)]


def build_evaluation_prompt(challenge: dict[str, Any], files: Iterable[dict[str, Any]]) -> str:
    files = list(files)
    language = str(challenge.get("language") or "")
    prompt = (
        f"Evaluate this {language} solution for the following challenge:\n\n"
        f"## Challenge: {challenge.get('title', '')}\n"
        f"**Difficulty**: {challenge.get('difficulty', '')}\n\n"
        f"### Instructions\n{challenge.get('description', '')}\n"
    )

    patterns = challenge.get("expectedPatterns") or []
    if patterns:
        prompt += f"\n### Expected Patterns\nThe solution should demonstrate: {', '.join(patterns)}\n"

    cases = _test_cases(challenge.get("testCases"))
    if cases:
        lines = []
        for index, case in enumerate(cases, 1):
            line = f"{index}. Input: {case.get('input')} -> Expected: {case.get('expectedOutput')}"
            if case.get("description"):
                line += f" ({case['description']})"
            lines.append(line)
        prompt += "\n### Test Cases\n" + "\n".join(lines) + "\n"

    prompt += f"\n## User's Solution ({len(files)} file{'' if len(files) == 1 else 's'})\n"
    for file in files:
        name = str(file.get("name") or "")
        ext = name.rsplit(".", 1)[-1].lower() if "." in name else language.lower()
        prompt += f"\n### {name}\n```{ext}\n{file.get('content', '')}\n```\n"

    prompt += (
        "\n## Your Task\nEvaluate this solution using the EXACT format from your system instructions: "
        "the JSON metadata block first, then the feedback between ---FEEDBACK--- and ---END FEEDBACK---."
    )
    return prompt
