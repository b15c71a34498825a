from __future__ import annotations

from pathlib import Path

from apkllama.types import Finding

DEFAULT_REPORT_TEMPLATE = """\
You are a security researcher with 10 years of experience, writing a bug bounty-style vulnerability report.
Based on the details below, generate a clear, professional write-up suitable for submission to a bug bounty program.

Vulnerability Details-

* Title: {}
* Severity: {}
* Category: {}
* Affected File / Location: {}
* Evidence: {}

Write the report using this structure:

1. Summary
* Briefly explain what the vulnerability is and where it was found.

2. Description / Technical Details
* Explain the issue clearly and technically.

3. Impact
* Explain what an attacker could achieve by exploiting this issue.

4. Steps to Reproduce (if applicable)
* Provide clear, logical steps that demonstrate how the issue can be observed or verified.

5. Mitigation
* Provide various mitigation strategies.

Guidelines
* Keep the writing **concise, clear, and professional**.
* Use language and tone appropriate for **bug bounty platforms (HackerOne / Bugcrowd style reports)**.
* Avoid unnecessary verbosity, but ensure the explanation is complete and understandable.
* If something is missing fill the gaps, only if necessary.
"""


def render_prompt(template: str, finding: Finding) -> str:
    """Fill the five positional slots: title, severity, category, file path, evidence."""
    return template.format(
        finding.title,
        finding.severity.display_name,
        finding.category,
        finding.file_path,
        finding.evidence,
    )


def load_template(path: Path | None) -> str:
    if path is None:
        return DEFAULT_REPORT_TEMPLATE
    template = path.read_text(encoding="utf-8")
    if not template.strip():
        raise ValueError(f"Prompt template {path} is empty")
    check_template(template)
    return template


def check_template(template: str) -> None:
    """Reject templates that cannot take the five positional values.

    Literal braces (a JSON example, say) must be doubled.
    """
    try:
        template.format(*(["x"] * 5))
    except (IndexError, KeyError, ValueError) as exc:
        raise ValueError(
            f"Prompt template needs five positional {{}} slots and doubled literal braces: {exc!r}"
        ) from exc
