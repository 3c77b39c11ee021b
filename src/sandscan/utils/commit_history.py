import os
from datetime import datetime
from typing import Callable, List, Tuple

from sandscan.engine.errors import SignalExtractionError, SourceFetchError
from sandscan.engine.records import CommitRecord

# unit separator between fields, record separator between commits
LOG_FORMAT = "%H%x1f%an%x1f%ae%x1f%aI%x1f%s%x1f%b%x1e"

SUSPICIOUS_MESSAGES = [
    'backdoor', 'malware', 'virus', 'trojan', 'exploit',
    'hack', 'crack', 'bypass', 'disable security',
    'remove validation', 'skip check', 'temporary fix',
]
SUSPICIOUS_CODE = [
    'eval(', 'exec(', 'system(', 'shell_exec',
    'base64_decode', 'atob(', 'btoa(',
    'crypto', 'mining', 'bitcoin', 'ethereum',
    'wget', 'curl', 'download', 'fetch(',
    'setuid', 'chmod 777', 'sudo',
    'password', 'secret', 'token', 'api_key',
]
SUSPICIOUS_EXTENSIONS = {'.exe', '.dll', '.so', '.dylib', '.bin', '.dat'}


def detect_suspicious_patterns(message, diff, files_changed, additions, deletions) -> List[str]:
    """
    Cheap textual heuristics run before the threat oracle sees a commit.
    """
    patterns = []
    message = (message or "").lower()
    diff = (diff or "").lower()

    for pattern in SUSPICIOUS_MESSAGES:
        if pattern in message:
            patterns.append(f'Suspicious commit message: contains "{pattern}"')
    for pattern in SUSPICIOUS_CODE:
        if pattern in diff:
            patterns.append(f'Suspicious code pattern: contains "{pattern}"')

    if additions > 1000 and deletions < 100:
        patterns.append('Large addition with minimal deletions (potential injection)')
    if len(files_changed) > 20:
        patterns.append('Unusually large number of files changed')

    suspicious_files = [f for f in files_changed if os.path.splitext(f)[1].lower() in SUSPICIOUS_EXTENSIONS]
    if suspicious_files:
        patterns.append(f"Suspicious file types: {', '.join(suspicious_files)}")
    return patterns


def _parse_numstat(output: str):
    files, additions, deletions = [], 0, 0
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        added, removed, path = parts[0], parts[1], parts[2]
        files.append(path)
        # binary files report "-" for both counts
        additions += int(added) if added.isdigit() else 0
        deletions += int(removed) if removed.isdigit() else 0
    return files, additions, deletions


def _parse_log_entry(entry: str) -> dict:
    fields = entry.split("\x1f")
    if len(fields) < 6:
        raise ValueError(f"expected 6 log fields, got {len(fields)}")
    commit_hash, author, email, date, subject, body = fields[:6]
    if not commit_hash:
        raise ValueError("empty commit hash")
    return {
        "hash": commit_hash,
        "author": author or "unknown",
        "email": email,
        "date": datetime.fromisoformat(date) if date else None,
        "message": subject,
        "body": body.strip(),
    }


def extract_commits(repo_path, run_git: Callable, limit=50, diff_limit=10000) -> Tuple[List[CommitRecord], List[SignalExtractionError]]:
    """
    Read up to `limit` commits from a checkout, newest first.
    `run_git(args, cwd=...)` returns git's stdout and raises SourceFetchError on failure.
    Commits that cannot be read are returned as errors; the rest are kept.
    """
    commits, errors = [], []
    try:
        raw = run_git(["log", f"--max-count={limit}", f"--format={LOG_FORMAT}"], cwd=repo_path)
    except SourceFetchError as e:
        return commits, [SignalExtractionError("commit history", str(e))]

    for entry in raw.split("\x1e"):
        entry = entry.lstrip("\n")
        if not entry.strip():
            continue
        label = entry.split("\x1f", 1)[0][:12] or "unknown commit"
        try:
            fields = _parse_log_entry(entry)
            numstat = run_git(["show", "--numstat", "--format=", "--no-color", fields["hash"]], cwd=repo_path)
            diff = run_git(["show", "--format=", "--no-color", "--no-ext-diff", fields["hash"]], cwd=repo_path)
        except (SourceFetchError, ValueError) as e:
            errors.append(SignalExtractionError(label, str(e)))
            continue
        files, additions, deletions = _parse_numstat(numstat)
        diff = diff[:diff_limit]
        commits.append(CommitRecord(
            files_changed=files,
            additions=additions,
            deletions=deletions,
            diff=diff,
            suspicious_patterns=detect_suspicious_patterns(fields["message"], diff, files, additions, deletions),
            **fields,
        ))
    return commits, errors
