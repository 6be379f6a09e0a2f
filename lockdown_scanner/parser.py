# lockdown_scanner/parser.py
import json
import logging
import re
import tomllib
from pathlib import PurePosixPath
from typing import Callable

import yaml
from packaging.requirements import InvalidRequirement, Requirement
from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version

from .exceptions import ParseError
from .go_parser import parse_go_mod
from .models import PackageQuery

logger = logging.getLogger(__name__)

NPM = "npm"
PYPI = "PyPI"

LOCKFILE = "lockfile"
MANIFEST = "manifest"

# Leading range operators stripped from package.json specs
NPM_RANGE_OPERATORS = re.compile(r'^(?:\^|~|>=|<=|>|<|=|v|\s)+')
NPM_EXACT_VERSION = re.compile(r'^(\d+\.\d+\.\d+(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?)')

YARN_ENTRY_NAME = re.compile(r'^"?(@?[^@\s"]+)@')
YARN_VERSION = re.compile(r'^\s+version:?\s+"?([^"\s]+)"?')
PNPM_KEY_V5 = re.compile(r'^/((?:@[^/@]+/)?[^/@]+)/(\d[^/_()]*)')
PNPM_KEY_V6 = re.compile(r'^/?((?:@[^/@]+/)?[^/@]+)@(\d[^()_]*)')


def _load_json(content: str, source_hint: str):
    try:
        return json.loads(content)
    except json.JSONDecodeError as e:
        raise ParseError(f"Could not decode JSON content: {e}", source=source_hint) from e


def _unique(queries: list[PackageQuery]) -> list[PackageQuery]:
    """Drops repeated (ecosystem, name, version) keys, keeping first-seen order."""
    seen = {}
    for query in queries:
        seen.setdefault(query.key, query)
    return list(seen.values())


# --- npm family ---

def normalize_npm_version(spec: str) -> str | None:
    """Reduces a package.json range like '^4.17.15' to '4.17.15'; None if unusable."""
    if not isinstance(spec, str):
        return None
    stripped = NPM_RANGE_OPERATORS.sub('', spec.strip())
    match = NPM_EXACT_VERSION.match(stripped)
    return match.group(1) if match else None


def parse_package_json(content: str, source_hint: str = "package.json") -> list[PackageQuery]:
    data = _load_json(content, source_hint)
    if not isinstance(data, dict):
        raise ParseError("package.json root is not an object", source=source_hint)

    queries = []
    dropped = 0
    for section in ('dependencies', 'devDependencies', 'optionalDependencies'):
        deps = data.get(section) or {}
        if not isinstance(deps, dict):
            continue
        for name, version_spec in deps.items():
            version = normalize_npm_version(version_spec)
            if not version:
                dropped += 1
                continue
            queries.append(PackageQuery(name=name, ecosystem=NPM, version=version))
    if dropped:
        logger.debug(f"({source_hint}) Dropped {dropped} dependencies with unparsable version ranges")
    return _unique(queries)


def _lock_v1_dependencies(deps: dict, found: list[PackageQuery]):
    for name, details in deps.items():
        if not isinstance(details, dict):
            continue
        version = details.get('version')
        if isinstance(version, str) and normalize_npm_version(version) == version:
            found.append(PackageQuery(name=name, ecosystem=NPM, version=version))
        nested = details.get('dependencies')
        if isinstance(nested, dict):
            _lock_v1_dependencies(nested, found)


def parse_package_lock(content: str, source_hint: str = "package-lock.json") -> list[PackageQuery]:
    """
    Parses package-lock.json / npm-shrinkwrap.json content.
    Lockfile v2/v3 use the 'packages' map; v1 only has nested 'dependencies'.
    """
    data = _load_json(content, source_hint)
    if not isinstance(data, dict):
        raise ParseError("Lockfile root is not an object", source=source_hint)

    found: list[PackageQuery] = []
    packages = data.get('packages')
    if isinstance(packages, dict):
        for path, details in packages.items():
            if not path or 'node_modules/' not in path or not isinstance(details, dict):
                continue  # root project entry or workspace folder
            if details.get('link'):
                continue
            name = details.get('name') or path.rsplit('node_modules/', 1)[1]
            version = details.get('version')
            if isinstance(version, str) and normalize_npm_version(version) == version:
                found.append(PackageQuery(name=name, ecosystem=NPM, version=version))
    elif isinstance(data.get('dependencies'), dict):
        _lock_v1_dependencies(data['dependencies'], found)
    else:
        logger.warning(f"({source_hint}) Lockfile has neither 'packages' nor 'dependencies'")

    return _unique(found)


def parse_yarn_lock(content: str, source_hint: str = "yarn.lock") -> list[PackageQuery]:
    """Parses yarn.lock v1 blocks (and the berry 'version: x' form)."""
    found = []
    current_name = None
    for line in content.splitlines():
        if not line.strip() or line.lstrip().startswith('#'):
            continue
        if not line[0].isspace():
            if line.startswith('__metadata'):
                current_name = None
                continue
            match = YARN_ENTRY_NAME.match(line)
            current_name = match.group(1) if match else None
            continue
        if current_name:
            match = YARN_VERSION.match(line)
            if match:
                found.append(PackageQuery(name=current_name, ecosystem=NPM, version=match.group(1)))
                current_name = None
    return _unique(found)


def _split_pnpm_key(key: str) -> tuple[str, str] | None:
    # v5: /name/1.0.0_peer@x   v6: /name@1.0.0(peer@x)   v9: name@1.0.0
    match = PNPM_KEY_V5.match(key) or PNPM_KEY_V6.match(key)
    if not match:
        return None
    return match.group(1), match.group(2)


def parse_pnpm_lock(content: str, source_hint: str = "pnpm-lock.yaml") -> list[PackageQuery]:
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ParseError(f"Could not parse YAML: {e}", source=source_hint) from e
    if not isinstance(data, dict):
        raise ParseError("pnpm lockfile root is not a mapping", source=source_hint)

    packages = data.get('packages') or {}
    if not isinstance(packages, dict):
        raise ParseError("pnpm lockfile 'packages' is not a mapping", source=source_hint)

    found = []
    for key in packages:
        parsed = _split_pnpm_key(str(key))
        if parsed:
            found.append(PackageQuery(name=parsed[0], ecosystem=NPM, version=parsed[1]))
    return _unique(found)


# --- Python family ---

REQUIREMENT_OPTION = re.compile(r'\s--?[A-Za-z]')


def _logical_lines(content: str):
    """Yields (first line number, text) with backslash continuations joined."""
    pending, start = [], None
    for line_num, line in enumerate(content.splitlines(), 1):
        if start is None:
            start = line_num
        stripped = line.rstrip()
        if stripped.endswith('\\'):
            pending.append(stripped[:-1])
            continue
        pending.append(line)
        yield start, ' '.join(pending)
        pending, start = [], None
    if pending:
        yield start, ' '.join(pending)


def parse_requirements(content: str, source_hint: str = "requirements.txt") -> list[PackageQuery]:
    """
    Parses requirements.txt content. 'name==version' lines become pinned
    queries, other requirement lines become unpinned queries.
    """
    packages = []
    for line_num, line in _logical_lines(content):
        line = line.split(' #', 1)[0].strip()
        # per-requirement options such as pip-compile's --hash
        line = REQUIREMENT_OPTION.split(line, 1)[0].strip()
        if not line or line.startswith('#') or line.startswith('-'):
            continue  # comments, -r/-c includes, -e and other options
        if '://' in line or line.startswith('git+'):
            continue
        try:
            req = Requirement(line)
        except InvalidRequirement:
            logger.warning(f"({source_hint}) Skipping line {line_num}: could not parse '{line}'")
            continue
        if req.url:
            continue

        name = canonicalize_name(req.name)
        pinned = [s for s in req.specifier if s.operator in ('==', '===') and '*' not in s.version]
        version = None
        if pinned:
            version = pinned[0].version
            try:
                Version(version)
            except InvalidVersion:
                logger.warning(f"({source_hint}) Skipping line {line_num}: invalid version '{version}' for '{name}'")
                continue
        packages.append(PackageQuery(name=name, ecosystem=PYPI, version=version))

    logger.debug(f"Parsed {len(packages)} packages from requirements content ({source_hint}).")
    return _unique(packages)


def parse_pipfile_lock(content: str, source_hint: str = "Pipfile.lock") -> list[PackageQuery]:
    data = _load_json(content, source_hint)
    if not isinstance(data, dict):
        raise ParseError("Pipfile.lock root is not an object", source=source_hint)

    found = []
    for section in ('default', 'develop'):
        deps = data.get(section) or {}
        if not isinstance(deps, dict):
            logger.warning(f"({source_hint}) Ignoring '{section}' section: not an object")
            continue
        for name, details in deps.items():
            if not isinstance(details, dict):
                continue
            version = details.get('version')
            if isinstance(version, str) and version.startswith('=='):
                found.append(PackageQuery(name=canonicalize_name(name), ecosystem=PYPI, version=version[2:]))
    return _unique(found)


def parse_poetry_lock(content: str, source_hint: str = "poetry.lock") -> list[PackageQuery]:
    try:
        data = tomllib.loads(content)
    except tomllib.TOMLDecodeError as e:
        raise ParseError(f"Could not parse TOML: {e}", source=source_hint) from e

    entries = data.get('package') or []
    if not isinstance(entries, list):
        raise ParseError("poetry.lock 'package' is not an array of tables", source=source_hint)

    found = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        name, version = entry.get('name'), entry.get('version')
        if isinstance(name, str) and isinstance(version, str):
            found.append(PackageQuery(name=canonicalize_name(name), ecosystem=PYPI, version=version))
    return _unique(found)


# --- Dispatch ---

ParserFunc = Callable[[str, str], list[PackageQuery]]

# Ordered: lockfiles before manifests, so pinned versions win in the query builder
MANIFEST_PARSERS: dict[str, tuple[str, ParserFunc]] = {
    'package-lock.json': (LOCKFILE, parse_package_lock),
    'npm-shrinkwrap.json': (LOCKFILE, parse_package_lock),
    'yarn.lock': (LOCKFILE, parse_yarn_lock),
    'pnpm-lock.yaml': (LOCKFILE, parse_pnpm_lock),
    'Pipfile.lock': (LOCKFILE, parse_pipfile_lock),
    'poetry.lock': (LOCKFILE, parse_poetry_lock),
    'package.json': (MANIFEST, parse_package_json),
    'requirements.txt': (MANIFEST, parse_requirements),
    'go.mod': (MANIFEST, parse_go_mod),
}


def manifest_kind(path: str) -> str | None:
    entry = MANIFEST_PARSERS.get(PurePosixPath(path).name)
    return entry[0] if entry else None


def parse_manifest(path: str, content: str) -> list[PackageQuery]:
    """Parses one manifest or lockfile; a file that fails to parse yields no queries."""
    entry = MANIFEST_PARSERS.get(PurePosixPath(path).name)
    if entry is None:
        logger.debug(f"No parser registered for {path}")
        return []
    _, parse = entry
    try:
        queries = parse(content, path)
    except ParseError as e:
        logger.warning(f"Parse error in {path}: {e}")
        return []
    logger.info(f"Parsed {len(queries)} packages from {path}")
    return queries
