"""Error summarizer: raw verifier output -> compact, agent-safe digest.

Raw build, test and lint output can run to thousands of lines. Forwarding it
to the agent wastes context and buries the signal, so we pull out the lines
that matter with regexes instead. Structured tool output is regular enough for
this to be reliable, and it costs nothing and is deterministic.

Every function here is pure: no I/O, same input -> same output, never raises
on unrecognised input and never returns an empty summary for a known failure.
"""

import re
from typing import Iterable, List, Optional

from background_agent.constants import (
    DIGEST_CHAR_LIMIT,
    MAX_SHOWN_FAILURES,
    SHORT_SUMMARY_WIDTH,
)
from background_agent.models import BUILD, CUSTOM, LINT, TEST, VerificationOutcome


BUILD_FALLBACK = "Build failed (no specific error lines found in output)"
TEST_FALLBACK = "Tests failed (unable to extract specific test names)"
LINT_FALLBACK = "Lint failed (unable to extract specific errors)"
CUSTOM_FALLBACK = "Verification failed (no output captured)"
EMPTY_DIGEST = "(no specific errors extracted from verification results)"

TRUNCATION_MARKER = "\n...(truncated, showing first {shown} chars)"

# --- Build patterns ---

# tsc: "src/foo.ts(10,5): error TS2345: Argument of type..."
_TSC_ERROR = re.compile(r"\S+\.\w+\(\d+,\d+\): error TS\d+: [^\n]+")

# gcc/clang/mypy/javac-ish: "src/foo.c:10:5: error: expected ';'"
#                           "app/x.py:3: error: Incompatible types  [arg-type]"
_COLON_ERROR = re.compile(r"^\S+?:\d+(?::\d+)?:\s*(?:fatal )?error\b[^\n]*", re.IGNORECASE)

_GENERIC_ERROR = re.compile(r"\berror\b", re.IGNORECASE)

# --- Test patterns ---

# Jest/Vitest bullets: "  ● Suite > test name", "  ✕ test name"
_TEST_BULLET = re.compile(r"[●✕✗]\s+[^\n]+")

# pytest short summary: "FAILED tests/test_x.py::test_y - AssertionError"
_PYTEST_FAILED = re.compile(r"^FAILED \S+::\S+[^\n]*", re.MULTILINE)

# Jest summary: "Tests: 3 failed, 12 passed, 15 total"
_JEST_SUMMARY = re.compile(r"Tests:\s+\d+ failed[^\n]*")

# pytest summary: "===== 2 failed, 3 passed in 0.12s ====="
_PYTEST_SUMMARY = re.compile(r"^=+ (\d+ failed[^=\n]*?) =+\s*$", re.MULTILINE)

# Mocha: "3 failing"
_MOCHA_COUNT = re.compile(r"(\d+) failing")

_FAIL_KEYWORD = re.compile(r"FAIL|FAILED|✗")

# --- Lint patterns ---

# ESLint: "  3:10  error  no-unused-vars  'x' is defined but never used"
_ESLINT_ERROR = re.compile(r"\d+:\d+\s+error\s+[^\n]+")

# flake8/ruff: "pkg/mod.py:1:1: F401 'os' imported but unused"
_FLAKE8_ERROR = re.compile(r"^(\S+?):\d+:\d+:\s+([A-Z]+\d+)\b[^\n]*")

# ESLint groups violations under a bare file path header line
_LINT_FILE_HEADER = re.compile(
    r"^(\S+\.(?:ts|tsx|js|jsx|mjs|cjs|vue|py))\s*$", re.MULTILINE
)


def _shown_with_remainder(items: List[str], more_template: str) -> str:
    """Join the first MAX_SHOWN_FAILURES items, plus a remainder line if cut."""
    shown = items[:MAX_SHOWN_FAILURES]
    text = "\n".join(shown)
    remaining = len(items) - len(shown)
    if remaining > 0:
        text += "\n" + more_template.format(remaining=remaining)
    return text


def extract_build_failures(raw: Optional[str]) -> str:
    """
    Summarize compiler output.

    Structured error lines (tsc, gcc/clang, mypy) are preferred; otherwise any
    line mentioning "error" is used. Shows up to 5 with a count of the rest.
    """
    raw = raw or ""
    structured = []
    for line in raw.splitlines():
        tsc = _TSC_ERROR.search(line)
        if tsc:
            structured.append(tsc.group(0))
            continue
        colon = _COLON_ERROR.match(line.strip())
        if colon:
            structured.append(colon.group(0))

    if structured:
        errors = structured
    else:
        errors = [line.strip() for line in raw.splitlines() if _GENERIC_ERROR.search(line)]

    if not errors:
        return BUILD_FALLBACK

    body = _shown_with_remainder(errors, "(+ {remaining} more errors)")
    return f"{len(errors)} build error(s):\n{body}"


def extract_test_failures(raw: Optional[str]) -> str:
    """
    Summarize test runner output (Jest, Vitest, Mocha, pytest).

    Count lines come first, then up to 5 individual failures.
    """
    raw = raw or ""
    failures = [m.group(0).strip() for m in _TEST_BULLET.finditer(raw)]
    failures.extend(m.group(0).strip() for m in _PYTEST_FAILED.finditer(raw))

    summary_lines = []
    jest = _JEST_SUMMARY.search(raw)
    if jest:
        summary_lines.append(jest.group(0).strip())
    else:
        pytest_summary = _PYTEST_SUMMARY.search(raw)
        if pytest_summary:
            summary_lines.append(pytest_summary.group(1).strip())
    mocha = _MOCHA_COUNT.search(raw)
    if mocha:
        summary_lines.append(mocha.group(0))

    if not failures and not summary_lines:
        fail_lines = [
            line.strip() for line in raw.splitlines() if _FAIL_KEYWORD.search(line)
        ][:MAX_SHOWN_FAILURES]
        if fail_lines:
            return "Test failures:\n" + "\n".join(fail_lines)
        return TEST_FALLBACK

    parts = list(summary_lines)
    if failures:
        parts.append(_shown_with_remainder(failures, "(+ {remaining} more test failures)"))
    return "\n".join(parts)


def extract_lint_failures(raw: Optional[str]) -> str:
    """Summarize linter output (ESLint, flake8, ruff) with a distinct file count."""
    raw = raw or ""
    violations = []
    files = set(_LINT_FILE_HEADER.findall(raw))

    for line in raw.splitlines():
        eslint = _ESLINT_ERROR.search(line)
        if eslint:
            violations.append(eslint.group(0).strip())
            continue
        flake8 = _FLAKE8_ERROR.match(line.strip())
        if flake8:
            violations.append(flake8.group(0).strip())
            files.add(flake8.group(1))

    if not violations:
        return LINT_FALLBACK

    body = _shown_with_remainder(violations, "...and {remaining} more")
    return f"{len(violations)} lint error(s) in {len(files)} file(s):\n{body}"


def extract_custom_failures(raw: Optional[str]) -> str:
    """First non-empty lines of free-form verifier output."""
    lines = [line.strip() for line in (raw or "").splitlines() if line.strip()]
    if not lines:
        return CUSTOM_FALLBACK
    return _shown_with_remainder(lines, "(+ {remaining} more lines)")


_EXTRACTORS = {
    BUILD: extract_build_failures,
    TEST: extract_test_failures,
    LINT: extract_lint_failures,
    CUSTOM: extract_custom_failures,
}


def summarize_failure(category: str, raw: Optional[str]) -> str:
    """Dispatch raw output to the extractor for its category."""
    extractor = _EXTRACTORS.get(category, extract_custom_failures)
    return extractor(raw)


def short_summary(text: str, width: int = SHORT_SUMMARY_WIDTH) -> str:
    """
    Collapse an extractor summary into one agent-facing line of at most `width` chars.

    The count line leads, followed by as many examples as fit; the rest is
    replaced by "...".
    """
    summary = ""
    for line in text.splitlines():
        line = " ".join(line.split())
        if not line:
            continue
        if not summary:
            summary = line
        elif summary.endswith(":"):
            summary += " " + line
        else:
            summary += "; " + line
    if len(summary) > width:
        summary = summary[: width - 3].rstrip() + "..."
    return summary


def build_digest(
    verification_outcomes: Iterable[VerificationOutcome],
    limit: int = DIGEST_CHAR_LIMIT,
) -> str:
    """
    Build the agent-facing digest from verification outcomes.

    Passed outcomes are skipped. Each failure becomes "[CATEGORY] summary",
    sections are separated by a blank line, and the result is hard-capped at
    `limit` characters including the truncation marker. raw_detail is never
    read here.
    """
    if limit < 100:
        raise ValueError(f"Digest limit too small: {limit}")

    sections = []
    for outcome in verification_outcomes:
        if outcome.passed:
            continue
        for failure in outcome.failures:
            sections.append(f"[{failure.category.upper()}] {failure.summary}")

    if not sections:
        return EMPTY_DIGEST

    joined = "\n\n".join(sections)
    if len(joined) <= limit:
        return joined

    # Marker length depends on the shown count; size it for the widest case
    shown = limit - len(TRUNCATION_MARKER.format(shown=limit))
    return joined[:shown] + TRUNCATION_MARKER.format(shown=shown)
