#!/usr/bin/env python3
"""PII gate for source files.

Fails if:
- print( found in runtime code (src/**)
- A logger call names a chat address, phone, push name or message body
  without going through safe_log_context / hash_identifier

Usage:
    python scripts/gate_security_pii.py [src_dir]
"""

import re
import sys
from pathlib import Path

# Keywords that must not appear in logger calls without redaction
SENSITIVE_KEYWORDS = (
    "remote_jid",
    "remotejid",
    "phone",
    "push_name",
    "pushname",
    "message.content",
    "raw_message",
    "payload",
)

PRINT_PATTERN = re.compile(r"\bprint\s*\(")

LOGGER_CALL_PATTERN = re.compile(
    r"logger\.(debug|info|warning|error|critical|exception)\s*\("
)

REDACTION_PATTERNS = (
    "safe_log_context",
    "hash_identifier",
    "redact_value",
)


def check_file(filepath: Path) -> list[str]:
    """Check a single file for violations. Returns list of error messages."""
    errors = []
    try:
        content = filepath.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return []

    for lineno, line in enumerate(content.splitlines(), start=1):
        if line.lstrip().startswith("#"):
            continue

        code_part = line.split("#")[0]
        if PRINT_PATTERN.search(code_part):
            errors.append(f"{filepath}:{lineno}: print() not allowed in runtime code")

        if LOGGER_CALL_PATTERN.search(code_part):
            line_lower = code_part.lower()
            for keyword in SENSITIVE_KEYWORDS:
                if keyword in line_lower and not any(rp in code_part for rp in REDACTION_PATTERNS):
                    errors.append(
                        f"{filepath}:{lineno}: logger call with '{keyword}' "
                        "must use redaction (safe_log_context/hash_identifier)"
                    )

    return errors


def check_tree(src_dir: Path) -> list[str]:
    all_errors: list[str] = []
    for pyfile in sorted(src_dir.rglob("*.py")):
        all_errors.extend(check_file(pyfile))
    return all_errors


def main(argv: list[str]) -> int:
    src_dir = Path(argv[1]) if len(argv) > 1 else Path("src")
    if not src_dir.exists():
        src_dir = Path(__file__).parent.parent / "src"

    if not src_dir.exists():
        sys.stderr.write("Error: src directory not found\n")
        return 1

    all_errors = check_tree(src_dir)
    if all_errors:
        sys.stderr.write("PII gate FAILED - violations found:\n")
        for err in all_errors:
            sys.stderr.write(f"  {err}\n")
        return 1

    sys.stdout.write("PII gate PASSED - no violations found\n")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
