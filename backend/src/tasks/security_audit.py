"""
Pre-push security audit.

Looks for credentials that are about to leave the machine: `.env` files that
git would pick up, an `.env.example` holding real values, and hardcoded keys
in the source tree.

Usage:
    python -m tasks.security_audit [--root PATH]

Exits 1 if any issue is found.
"""
import argparse
import re
import subprocess
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

SOURCE_SUFFIXES = (".py", ".toml", ".cfg", ".ini", ".json", ".yaml", ".yml")

SECRET_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("Supabase project URL", re.compile(r"https://[a-z0-9]{20}\.supabase\.co")),
    ("JWT token", re.compile(r"eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+")),
    ("Service key", re.compile(r"sk_[a-zA-Z0-9]{32,}")),
)

PLACEHOLDER_MARKERS = ("your_", "_here", "xxx")

REQUIRED_SCRIPTS = ("linkshelf", "linkshelf-setup-check", "linkshelf-security-audit")


@dataclass
class AuditReport:
    """Findings from an audit run."""

    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    passed: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues


def check_gitignore(root: Path, report: AuditReport) -> None:
    gitignore = root / ".gitignore"
    if not gitignore.is_file():
        report.issues.append(".gitignore file not found")
        return
    patterns = [line.strip() for line in gitignore.read_text(encoding="utf-8").splitlines()]
    if any(p.startswith(".env") or p in ("*.env", "**/.env") for p in patterns):
        report.passed.append(".gitignore excludes .env files")
    else:
        report.issues.append(".gitignore does not exclude .env files")


def check_env_example(root: Path, report: AuditReport) -> None:
    """Every non-empty value in .env.example must look like a placeholder."""
    example = root / ".env.example"
    if not example.is_file():
        report.issues.append(".env.example file not found")
        return
    suspicious = []
    for line in example.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        name, value = line.split("=", 1)
        value = value.strip().strip("'\"")
        if not value or any(marker in value for marker in PLACEHOLDER_MARKERS):
            continue
        if name.strip().endswith(("KEY", "SECRET", "TOKEN", "URL")):
            suspicious.append(name.strip())
    if suspicious:
        report.issues.append(f".env.example might contain real credentials: {', '.join(suspicious)}")
    else:
        report.passed.append(".env.example contains placeholders only")


def scan_for_secrets(source_dir: Path, report: AuditReport) -> None:
    if not source_dir.is_dir():
        report.warnings.append(f"Could not scan {source_dir}: not a directory")
        return
    found = False
    for path in sorted(source_dir.rglob("*")):
        if not path.is_file() or path.suffix not in SOURCE_SUFFIXES:
            continue
        content = path.read_text(encoding="utf-8", errors="ignore")
        for name, pattern in SECRET_PATTERNS:
            if pattern.search(content):
                found = True
                report.issues.append(f"Found {name} in {path.relative_to(source_dir)}")
    if not found:
        report.passed.append("No hardcoded secrets found in source code")


def staged_files(root: Path) -> list[str]:
    """
    List paths staged for commit.

    Raises:
        OSError: If git is not installed.
        subprocess.CalledProcessError: If `root` is not a git repository.
    """
    result = subprocess.run(
        ["git", "diff", "--cached", "--name-only"],
        cwd=root,
        capture_output=True,
        text=True,
        check=True,
    )
    return [line for line in result.stdout.splitlines() if line]


def check_staged_env(root: Path, report: AuditReport) -> None:
    try:
        staged = staged_files(root)
    except (OSError, subprocess.CalledProcessError):
        report.warnings.append("Not a git repository or git not installed")
        return
    env_files = [
        path for path in staged
        if Path(path).name.startswith(".env") and Path(path).name != ".env.example"
    ]
    if env_files:
        for path in env_files:
            report.issues.append(f"{path} is staged for commit (run: git reset {path})")
    else:
        report.passed.append(".env files not staged for commit")


def check_project_scripts(root: Path, report: AuditReport) -> None:
    pyproject = root / "pyproject.toml"
    try:
        data = tomllib.loads(pyproject.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError):
        report.issues.append("Could not read pyproject.toml")
        return
    scripts = data.get("project", {}).get("scripts", {})
    missing = [name for name in REQUIRED_SCRIPTS if name not in scripts]
    if missing:
        report.issues.append(f"Missing console scripts: {', '.join(missing)}")
    else:
        report.passed.append("All console scripts declared")


def run_audit(root: Path) -> AuditReport:
    """Run every check against the project at `root`."""
    report = AuditReport()
    check_gitignore(root, report)
    check_env_example(root, report)
    scan_for_secrets(root / "backend" / "src", report)
    check_staged_env(root, report)
    check_project_scripts(root, report)
    return report


def print_report(report: AuditReport) -> None:
    rule = "━" * 34
    for item in report.passed:
        print(f"✅ {item}")
    for item in report.warnings:
        print(f"⚠️  {item}")
    for item in report.issues:
        print(f"❌ {item}")
    print(f"\n{rule}")
    if report.ok:
        print("✅ ALL CHECKS PASSED!")
    else:
        print("❌ SECURITY ISSUES FOUND - DO NOT PUSH!")
        print("Please fix the issues above before pushing.")
    print(rule)


def main() -> None:
    """Entry point for running the audit as a script."""
    parser = argparse.ArgumentParser(description="Check for credentials before pushing.")
    parser.add_argument("--root", type=Path, default=Path.cwd(), help="Project root")
    args = parser.parse_args()

    print("🔒 Running Security Audit...\n")
    report = run_audit(args.root)
    print_report(report)
    raise SystemExit(0 if report.ok else 1)


if __name__ == "__main__":
    main()
