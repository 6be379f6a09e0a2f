# lockdown_scanner/code_scanner.py
"""
Line-window heuristics for insecure code.

Every rule is a row in RULES. A rule fires on a line when all of its patterns
match the rule's scope: the line itself, or the three-line window made of the
previous, current and next lines. Each rule fires at most once per line.
"""
import logging
import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import PurePosixPath

from .config import ScannerConfig
from .exceptions import UpstreamServiceError
from .github_client import GitHubClient
from .models import CRITICAL, HIGH, MEDIUM, CodeFinding

logger = logging.getLogger(__name__)

SCANNED_EXTENSIONS = (
    '.js', '.jsx', '.ts', '.tsx', '.mjs', '.cjs', '.ejs', '.vue', '.html',
    '.json', '.yml', '.yaml', '.ini', '.config', '.properties', '.env',
    '.sh', '.bash', '.py', '.rb', '.php', '.java', '.go',
)
EXCLUDED_PATH_PARTS = ('node_modules/', 'dist/', 'vendor/', 'bower_components/')
EXCLUDED_SUFFIXES = ('.min.js', '.map', '.lock')

MAX_SNIPPET_LENGTH = 400

LINE = "line"
WINDOW = "window"

# Request-derived input across the common server stacks
USER_INPUT = (
    r'(req\.(query|body|params|headers|cookies)|request\.(args|form|values|json|GET|POST|data)'
    r'|\$_(GET|POST|REQUEST|COOKIE)|params\[|ctx\.request)'
)
COMMENT_PREFIXES = ('//', '#', '*', '/*')


@dataclass(frozen=True)
class PatternRule:
    rule_id: str
    title: str
    severity: str
    scope: str
    patterns: tuple[re.Pattern, ...]
    references: tuple[str, ...] = ()
    skip_comments: bool = False

    def matches(self, line_text: str, window_text: str) -> bool:
        if self.skip_comments and line_text.lstrip().startswith(COMMENT_PREFIXES):
            return False
        text = line_text if self.scope == LINE else window_text
        return all(p.search(text) for p in self.patterns)


def _rx(pattern: str, flags: int = 0) -> re.Pattern:
    return re.compile(pattern, flags)


RULES: tuple[PatternRule, ...] = (
    PatternRule(
        rule_id='code.dynamic_code_execution',
        title='Use of eval/Function constructor',
        severity=HIGH,
        scope=LINE,
        patterns=(_rx(r'(\beval\s*\(|new\s+Function\s*\()'),),
        references=('https://owasp.org/www-community/attacks/Code_Injection',),
    ),
    PatternRule(
        rule_id='code.command_injection',
        title='Potential Command Injection',
        severity=HIGH,
        scope=WINDOW,
        patterns=(
            _rx(r'(child_process|subprocess|os\.system|os\.popen|shell_exec|\bsystem\s*\(|Runtime\.getRuntime)'),
            _rx(r'\b(exec|execSync|spawn|spawnSync|execFile|run|call|Popen|system|popen|shell_exec)\s*\('),
            _rx(USER_INPUT + r'|process\.env'),
        ),
        references=('https://owasp.org/www-community/attacks/Command_Injection',),
    ),
    PatternRule(
        rule_id='code.sql_injection',
        title='Potential SQL Injection via string concatenation',
        severity=HIGH,
        scope=WINDOW,
        patterns=(
            _rx(r'\b(SELECT|INSERT|UPDATE|DELETE)\s+'),
            _rx(r'(\+\s*[\w$]|[\w$)\]]\s*\+|\$\{|%s|\.format\(|f["\'])'),
            _rx(USER_INPUT),
        ),
        references=('https://owasp.org/www-community/attacks/SQL_Injection',),
    ),
    PatternRule(
        rule_id='code.reflected_xss',
        title='Potential XSS (unsanitized user input returned)',
        severity=MEDIUM,
        scope=WINDOW,
        patterns=(
            _rx(r'(res\.(send|write|end|render)\s*\(|response\.write\s*\(|\becho\b|HttpResponse\s*\(|render_template_string\s*\()'),
            _rx(USER_INPUT),
        ),
        references=('https://owasp.org/www-community/attacks/xss/',),
    ),
    PatternRule(
        rule_id='code.path_traversal',
        title='Potential Path Traversal',
        severity=HIGH,
        scope=WINDOW,
        patterns=(
            _rx(r'(\bfs\.|\bpath\.|\bos\.path\.|\bopen\s*\(|send_file|sendFile|file_get_contents)'),
            _rx(r'(readFile|readFileSync|createReadStream|join|resolve|open|send_file|sendFile|file_get_contents)\s*\('),
            _rx(USER_INPUT),
        ),
        references=('https://owasp.org/www-community/attacks/Path_Traversal',),
    ),
    PatternRule(
        rule_id='code.weak_hash',
        title='Insecure Hash Algorithm (MD5/SHA1)',
        severity=MEDIUM,
        scope=LINE,
        patterns=(
            _rx(r'(createHash\(\s*[\'"](md5|sha1)[\'"]\s*\)|hashlib\.(md5|sha1)\s*\(|MessageDigest\.getInstance\(\s*"(MD5|SHA-?1)"|\b(md5|sha1)\s*\()', re.IGNORECASE),
        ),
        references=('https://cheatsheetseries.owasp.org/cheatsheets/Password_Storage_Cheat_Sheet.html',),
    ),
    PatternRule(
        rule_id='code.hardcoded_secret',
        title='Exposed API Key/Token',
        severity=CRITICAL,
        scope=LINE,
        patterns=(
            _rx(r'(api[_-]?key|apikey|api[_-]?token|auth[_-]?token|access[_-]?token|secret[_-]?key|api[_-]?secret|client[_-]?secret)'
                r'["\']?\s*[:=]\s*["\'][A-Za-z0-9_\-./+]{16,}["\']', re.IGNORECASE),
        ),
        references=('https://owasp.org/Top10/A07_2021-Identification_and_Authentication_Failures/',),
        skip_comments=True,
    ),
    PatternRule(
        rule_id='code.credentials_in_url',
        title='Credentials in URL',
        severity=CRITICAL,
        scope=LINE,
        patterns=(
            _rx(r'[a-z][a-z0-9+.-]*://[A-Za-z0-9_\-.%]+:[^@\s/\'"]+@[A-Za-z0-9_\-.]+', re.IGNORECASE),
        ),
        references=('https://cwe.mitre.org/data/definitions/798.html',),
        skip_comments=True,
    ),
)


def is_scannable(path: str) -> bool:
    lowered = path.lower()
    if any(part in lowered for part in EXCLUDED_PATH_PARTS) or lowered.endswith(EXCLUDED_SUFFIXES):
        return False
    name = PurePosixPath(lowered).name
    # dotfiles like '.env' have no suffix of their own
    return lowered.endswith(SCANNED_EXTENSIONS) or name.startswith('.env')


def scan_file_content(file_path: str, content: str, rules: tuple[PatternRule, ...] = RULES) -> list[CodeFinding]:
    """Runs the rule catalogue over every line of one file."""
    findings = []
    lines = content.splitlines()
    for i, line_text in enumerate(lines):
        window_text = ' '.join(lines[max(0, i - 1):i + 2])
        for rule in rules:
            if not rule.matches(line_text, window_text):
                continue
            findings.append(CodeFinding(
                rule_id=rule.rule_id,
                title=rule.title,
                description=f"{rule.title} detected in {file_path} at line {i + 1}.",
                severity=rule.severity,
                file_path=file_path,
                line=i + 1,
                snippet=window_text.strip()[:MAX_SNIPPET_LENGTH],
                references=rule.references,
            ))
    return findings


class CodeScanner:
    """Fetches source files from the repository and scans them."""

    def __init__(self, config: ScannerConfig, client: GitHubClient):
        self.config = config
        self.client = client

    def select_files(self, tree) -> list[str]:
        blobs = []
        for entry in tree:
            if entry.type != 'blob' or not is_scannable(entry.path):
                continue
            # Tree sizes are in bytes; content is re-checked after download
            if entry.size is not None and entry.size > self.config.max_file_size:
                logger.debug(f"Skipping {entry.path}: {entry.size} bytes exceeds size ceiling")
                continue
            blobs.append(entry.path)
        if len(blobs) > self.config.max_code_files:
            logger.info(f"Limiting static analysis to {self.config.max_code_files} of {len(blobs)} candidate files")
        return blobs[:self.config.max_code_files]

    def _scan_one(self, owner: str, repo: str, branch: str, path: str, cancel_event) -> list[CodeFinding]:
        if cancel_event is not None and cancel_event.is_set():
            return []
        try:
            content = self.client.get_file(owner, repo, branch, path)
        except UpstreamServiceError as e:
            logger.warning(f"Error fetching {path} for analysis: {e}")
            return []
        if content is None:
            return []
        if len(content) > self.config.max_file_size:
            logger.debug(f"Skipping {path}: {len(content)} chars exceeds size ceiling")
            return []
        return scan_file_content(path, content)

    def scan(self, owner: str, repo: str, branch: str, cancel_event=None) -> list[CodeFinding]:
        """
        Scans the repository tree. Raises UpstreamServiceError only when the
        tree listing itself cannot be fetched.
        """
        tree = self.client.get_tree(owner, repo, branch)
        paths = self.select_files(tree)
        logger.info(f"Running static analysis on {len(paths)} files in {owner}/{repo}@{branch}")

        per_file: dict[str, list[CodeFinding]] = {}
        with ThreadPoolExecutor(max_workers=max(1, self.config.max_workers)) as executor:
            future_to_path = {
                executor.submit(self._scan_one, owner, repo, branch, path, cancel_event): path
                for path in paths
            }
            for future in as_completed(future_to_path):
                per_file[future_to_path[future]] = future.result()

        # Tree order keeps the output stable regardless of completion order
        findings = [finding for path in paths for finding in per_file.get(path, [])]
        logger.info(f"Static analysis found {len(findings)} potential issues")
        return findings
