from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

logger = logging.getLogger("scaffolder.quality")

MAX_LINE_LENGTH = 120
STYLE_PENALTY = 5

_PAIRS = {")": "(", "]": "[", "}": "{"}
_OPENERS = set(_PAIRS.values())


@dataclass
class QualityReport:
    valid: bool
    syntax_errors: List[str] = field(default_factory=list)
    style_issues: List[str] = field(default_factory=list)
    score: int = 0

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def check_delimiters(code: str) -> List[str]:
    """Report unbalanced (), [] and {} outside strings and comments."""
    errors: List[str] = []
    stack: List[Tuple[str, int]] = []
    line = 1
    i, n = 0, len(code)
    while i < n:
        ch = code[i]
        if ch == "\n":
            line += 1
        elif code.startswith("//", i):
            end = code.find("\n", i)
            i = n if end == -1 else end
            continue
        elif code.startswith("/*", i):
            end = code.find("*/", i + 2)
            if end == -1:
                errors.append(f"Line {line}: Unterminated block comment")
                break
            line += code.count("\n", i, end)
            i = end + 2
            continue
        elif ch in ("'", '"', "`"):
            j = i + 1
            while j < n and code[j] != ch:
                if code[j] == "\\":
                    j += 1
                elif code[j] == "\n" and ch != "`":
                    break
                j += 1
            line += code.count("\n", i, min(j, n))
            if j < n and code[j] == ch:
                i = j + 1
                continue
            errors.append(f"Line {line}: Unterminated string literal")
            if j >= n:
                break
            i = j
            continue
        elif ch in _OPENERS:
            stack.append((ch, line))
        elif ch in _PAIRS:
            if not stack or stack[-1][0] != _PAIRS[ch]:
                errors.append(f"Line {line}: Unexpected '{ch}'")
            else:
                stack.pop()
        i += 1
    for opener, at in stack:
        errors.append(f"Line {at}: Unclosed '{opener}'")
    return errors


def check_style(code: str) -> List[str]:
    issues: List[str] = []
    if "console.log" in code:
        issues.append("Contains console.log statements")
    if ": any" in code or "as any" in code:
        issues.append('Contains "any" type usage')
    if "// TODO" in code or "// FIXME" in code:
        issues.append("Contains TODO/FIXME comments")
    for i, text in enumerate(code.split("\n"), start=1):
        if len(text) > MAX_LINE_LENGTH:
            issues.append(f"Line {i} exceeds {MAX_LINE_LENGTH} characters")
    return issues


def verify_code(code: str) -> QualityReport:
    syntax_errors = check_delimiters(code)
    style_issues = check_style(code)
    valid = not syntax_errors
    score = max(0, 100 - STYLE_PENALTY * len(style_issues)) if valid else 0
    return QualityReport(valid=valid, syntax_errors=syntax_errors, style_issues=style_issues, score=score)


def verify_files(files: Mapping[str, str]) -> Tuple[Optional[int], Dict[str, QualityReport]]:
    """Score every file; the artifact score is the mean rounded half up (None for no files)."""
    reports = {path: verify_code(content) for path, content in files.items()}
    if not reports:
        return None, reports
    total = sum(r.score for r in reports.values())
    score = (2 * total + len(reports)) // (2 * len(reports))
    logger.info(
        "quality_verified",
        extra={"score": score, "files": len(reports), "invalid": [p for p, r in reports.items() if not r.valid]},
    )
    return score, reports
