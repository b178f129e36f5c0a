from __future__ import annotations

import json
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

TEST_COMMAND_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"npm\s+test",
        r"npm\s+run\s+test",
        r"yarn\s+test",
        r"pnpm\s+test",
        r"pytest",
        r"python\s+-m\s+pytest",
        r"go\s+test",
        r"cargo\s+test",
        r"mvn\s+test",
        r"gradle\s+test",
        r"dotnet\s+test",
        r"jest",
        r"mocha",
        r"vitest",
        r"phpunit",
        r"rspec",
        r"npm\s+run\s+e2e",
        r"cypress\s+run",
        r"playwright\s+test",
    )
]

FAILURE_PATTERNS = [
    re.compile(r"(\d+)\s+fail(ed|ing|ure)?", re.IGNORECASE),
    re.compile(r"FAIL\b"),
    re.compile(r"FAILED\b"),
    re.compile(r"Error:", re.IGNORECASE),
    re.compile(r"AssertionError", re.IGNORECASE),
    re.compile(r"TypeError:", re.IGNORECASE),
    re.compile(r"ReferenceError:", re.IGNORECASE),
    re.compile(r"SyntaxError:", re.IGNORECASE),
    re.compile(r"Tests:\s+\d+\s+failed", re.IGNORECASE),
    re.compile(r"FAILURES!"),
    re.compile(r"FAIL\s+\["),
    re.compile(r"--- FAIL:"),
    re.compile("[✖✗]"),
    re.compile(r"npm ERR!", re.IGNORECASE),
    re.compile(r"error Command failed", re.IGNORECASE),
    re.compile(r"exited with code [1-9]", re.IGNORECASE),
]

SUCCESS_PATTERNS = [
    re.compile(r"All tests passed", re.IGNORECASE),
    re.compile(r"Tests:\s+\d+\s+passed,\s+\d+\s+total"),
    re.compile(r"(\d+)\s+passing", re.IGNORECASE),
    re.compile(r"OK \(\d+ tests?\)", re.IGNORECASE),
    re.compile(r"\bPASSED\b"),
    re.compile(r"0 failures", re.IGNORECASE),
    re.compile(r"pytest.*(\d+)\s+passed.*0 failed", re.IGNORECASE),
    re.compile(r"ok\s+\d+\s+tests", re.IGNORECASE),
    re.compile(r"BUILD SUCCESS", re.IGNORECASE),
    re.compile("[✓✔]"),
    re.compile(r"Test Suites:.*passed.*0 failed", re.IGNORECASE),
    re.compile(r"Tests:.*passed.*0 failed", re.IGNORECASE),
]

FAILURE_COUNT_PATTERN = re.compile(r"(\d+)\s+fail", re.IGNORECASE)
ERROR_LINE_PATTERN = re.compile(
    r"error:|fail|assert|exception|TypeError|ReferenceError", re.IGNORECASE
)
FAIL_LINE_PATTERN = re.compile("FAIL|[✖✗]")
EXIT_CODE_TEXT_PATTERN = re.compile(r"exit(?:ed)?\s+(?:with\s+)?(?:code\s+)?(\d+)", re.IGNORECASE)

UNDETERMINED_ERROR = "Unable to determine test result"
GENERIC_FAILURE_ERROR = "Test failure (check output for details)"

GITHUB_REFERENCE = re.compile(r"^#(\d+)$")
JIRA_REFERENCE = re.compile(r"^([A-Z]+-\d+)$")
BARE_NUMBER = re.compile(r"^(\d+)$")


@dataclass(slots=True, frozen=True)
class Verdict:
    passed: bool
    failures: int = 0
    error: str | None = None
    rule: str = ""


@dataclass(slots=True, frozen=True)
class ClassificationRule:
    name: str
    evaluate: Callable[[str, int | None], Verdict | None]


@dataclass(slots=True)
class RuleClassifier:
    """Evaluates rules in order; the first rule returning a verdict wins."""

    rules: Sequence[ClassificationRule]
    fallback: Verdict = field(
        default_factory=lambda: Verdict(passed=False, error=UNDETERMINED_ERROR)
    )

    def classify(self, output: str, exit_code: int | None = None) -> Verdict:
        for rule in self.rules:
            verdict = rule.evaluate(output, exit_code)
            if verdict is not None:
                return Verdict(
                    passed=verdict.passed,
                    failures=verdict.failures,
                    error=verdict.error,
                    rule=rule.name,
                )
        return Verdict(
            passed=self.fallback.passed,
            failures=self.fallback.failures,
            error=self.fallback.error,
            rule="fallback",
        )


def _failure_count(output: str) -> int | None:
    match = FAILURE_COUNT_PATTERN.search(output)
    if match is None:
        return None
    return int(match.group(1))


def extract_error_message(output: str) -> str:
    lines = output.split("\n")
    for line in lines:
        trimmed = line.strip()
        if 10 < len(trimmed) < 300 and ERROR_LINE_PATTERN.search(trimmed):
            return trimmed
    for line in lines:
        trimmed = line.strip()
        if FAIL_LINE_PATTERN.search(trimmed) and len(trimmed) < 200:
            return trimmed
    return GENERIC_FAILURE_ERROR


def _rule_empty_output(output: str, exit_code: int | None) -> Verdict | None:
    if output:
        return None
    if exit_code == 0:
        return Verdict(passed=True)
    return Verdict(passed=False, failures=1, error="No output, non-zero exit")


def _rule_success_markers(output: str, exit_code: int | None) -> Verdict | None:
    if not any(pattern.search(output) for pattern in SUCCESS_PATTERNS):
        return None
    failures = _failure_count(output)
    if failures:
        return None
    return Verdict(passed=True)


def _rule_failure_markers(output: str, exit_code: int | None) -> Verdict | None:
    if not any(pattern.search(output) for pattern in FAILURE_PATTERNS):
        return None
    failures = _failure_count(output)
    return Verdict(
        passed=False,
        failures=1 if failures is None else failures,
        error=extract_error_message(output),
    )


def _rule_exit_code(output: str, exit_code: int | None) -> Verdict | None:
    if exit_code is None:
        return None
    if exit_code == 0:
        return Verdict(passed=True)
    return Verdict(passed=False, failures=1, error=f"Exit code: {exit_code}")


TEST_RESULT_CLASSIFIER = RuleClassifier(
    rules=(
        ClassificationRule("empty-output", _rule_empty_output),
        ClassificationRule("success-markers", _rule_success_markers),
        ClassificationRule("failure-markers", _rule_failure_markers),
        ClassificationRule("exit-code", _rule_exit_code),
    )
)


def classify_test_result(output: str, exit_code: int | None = None) -> Verdict:
    return TEST_RESULT_CLASSIFIER.classify(output, exit_code)


def is_test_command(command: Any) -> bool:
    if not isinstance(command, str) or not command:
        return False
    return any(pattern.search(command) for pattern in TEST_COMMAND_PATTERNS)


def result_text(result: Any) -> str:
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    if isinstance(result, dict):
        parts = [
            str(result[key])
            for key in ("stdout", "stderr", "output")
            if isinstance(result.get(key), str) and result[key]
        ]
        if parts:
            return "\n".join(parts)
    return json.dumps(result, ensure_ascii=False)


def extract_exit_code(result: Any) -> int | None:
    if isinstance(result, dict):
        for key in ("exitCode", "exit_code", "code"):
            if key in result:
                value = result[key]
                if isinstance(value, bool):
                    return None
                if isinstance(value, int):
                    return value
                try:
                    return int(str(value))
                except ValueError:
                    return None
        return None
    if isinstance(result, str):
        match = EXIT_CODE_TEXT_PATTERN.search(result)
        if match:
            return int(match.group(1))
    return None


def normalize_error(error: Any) -> str:
    if not isinstance(error, str) or not error:
        return ""
    text = re.sub(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?Z?", "TIMESTAMP", error)
    text = re.sub(r"\d{4}-\d{2}-\d{2}\s+\d{2}:\d{2}:\d{2}", "TIMESTAMP", text)
    text = re.sub(r"at\s+.*?\(.*?\)", "at STACK", text)
    text = re.sub(r"at\s+/.*?:\d+:\d+", "at STACK", text)
    # line:column references last, after stack frames are collapsed
    text = re.sub(r":\d+:\d+", ":X:X", text)
    text = re.sub(r"0x[0-9a-fA-F]+", "0xADDR", text)
    return re.sub(r"\s+", " ", text).strip()


def is_identical_failure(current_error: str | None, history: Sequence[dict[str, Any]]) -> bool:
    """Compare against the last two recorded errors; the current run is already appended."""
    if not history:
        return False
    recent = [entry.get("error") for entry in history[-2:] if entry.get("error")]
    if len(recent) < 2:
        return False
    normalized = normalize_error(current_error)
    return all(normalize_error(error) == normalized for error in recent)


@dataclass(slots=True)
class SkippedTests:
    count: int = 0
    details: list[str] = field(default_factory=list)


def detect_skipped_tests(output: str) -> SkippedTests:
    if not output:
        return SkippedTests()

    total = 0
    jest_match = re.search(r"Tests:.*?(\d+)\s+skipped", output, re.IGNORECASE)
    if jest_match:
        total = int(jest_match.group(1))
    else:
        pytest_match = re.search(r"(\d+)\s+skipped", output, re.IGNORECASE)
        if pytest_match:
            total = int(pytest_match.group(1))
    pending_match = re.search(r"(\d+)\s+pending", output, re.IGNORECASE)
    if pending_match:
        total = max(total, int(pending_match.group(1)))

    details: list[str] = []
    for line in output.split("\n"):
        if re.match(r"^\s*○\s+", line) or re.search(r"\bskipped\b", line, re.IGNORECASE):
            name = re.search(r"○\s+(.+)", line) or re.search(
                r"skipped\s+(.+)", line, re.IGNORECASE
            )
            if name:
                details.append(name.group(1).strip())
        if re.search(r"SKIPPED\s+\[", line):
            name = re.search(r"SKIPPED\s+\[\d+\]\s+(.+)", line)
            if name:
                details.append(name.group(1).strip())
    return SkippedTests(count=total, details=details)


@dataclass(slots=True, frozen=True)
class SourceReference:
    source: str
    source_id: str | None
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "source_id": self.source_id,
            "description": self.description,
        }


def detect_source(
    text: Any, tracker: str | None = None, project_key: str | None = None
) -> SourceReference:
    if not isinstance(text, str) or not text:
        return SourceReference(source="manual", source_id=None, description="")

    trimmed = text.strip()
    github = GITHUB_REFERENCE.match(trimmed)
    if github:
        return SourceReference("github", f"GH-{github.group(1)}", trimmed)
    jira = JIRA_REFERENCE.match(trimmed)
    if jira:
        return SourceReference("jira", jira.group(1), trimmed)

    bare = BARE_NUMBER.match(trimmed)
    if bare and tracker == "github":
        return SourceReference("github", f"GH-{bare.group(1)}", trimmed)
    if bare and tracker == "jira" and project_key:
        return SourceReference("jira", f"{project_key.upper()}-{bare.group(1)}", trimmed)
    return SourceReference("manual", None, trimmed)
