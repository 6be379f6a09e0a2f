#!/usr/bin/env python3
"""
Go module parser for the LockDown scanner.
Turns go.mod content into Go ecosystem package queries.
"""

import logging
import re
from typing import Dict, List, Optional, Tuple

from .exceptions import ParseError
from .models import PackageQuery

logger = logging.getLogger(__name__)

GO_ECOSYSTEM = "Go"

PSEUDO_VERSION_PATTERN = re.compile(r'\d+\.\d+\.\d+-(?:\d+\.)?\d{14}-[a-f0-9]{12}')
REPLACE_PATTERN = re.compile(r'^(\S+)(?:\s+(\S+))?\s+=>\s+(\S+)(?:\s+(\S+))?$')


class GoModParser:
    """Parser for go.mod content (require and replace directives)."""

    def __init__(self, content: str, source_hint: str = "go.mod"):
        self.content = content
        self.source_hint = source_hint
        self.dependencies: List[Dict[str, str]] = []
        self.replacements: Dict[str, Tuple[str, str]] = {}
        self.module_name = ""
        self.go_version = ""

    def parse(self) -> List[PackageQuery]:
        """Parse go.mod content into package queries."""
        if '\x00' in self.content:
            raise ParseError("go.mod content is binary", source=self.source_hint)

        block: Optional[str] = None
        for raw_line in self.content.splitlines():
            line = self._strip_comment(raw_line)
            if not line:
                continue

            if block:
                if line == ')':
                    block = None
                elif block == 'require':
                    self._parse_require_spec(line, raw_line)
                elif block == 'replace':
                    self._parse_replace_spec(line)
                continue

            directive, _, rest = line.replace('\t', ' ').partition(' ')
            rest = rest.strip()
            if directive.endswith('(') and directive[:-1] in ('require', 'replace'):
                directive, rest = directive[:-1], '('
            if directive == 'module':
                self.module_name = rest.strip('"')
            elif directive == 'go':
                self.go_version = rest
            elif directive in ('require', 'replace'):
                if rest == '(':
                    block = directive
                elif directive == 'require':
                    self._parse_require_spec(rest, raw_line)
                else:
                    self._parse_replace_spec(rest)
            elif line.endswith('('):
                # exclude/retract blocks carry nothing we query
                block = 'ignored'

        if block and block != 'ignored':
            logger.warning(f"({self.source_hint}) Unterminated '{block}' block in go.mod")

        self._apply_replacements()
        return [
            PackageQuery(name=dep['name'], ecosystem=GO_ECOSYSTEM, version=dep['version'])
            for dep in self.dependencies
        ]

    @staticmethod
    def _strip_comment(line: str) -> str:
        return line.split('//', 1)[0].strip()

    def _parse_require_spec(self, spec: str, raw_line: str):
        # github.com/gin-gonic/gin v1.8.1 // indirect
        parts = spec.split()
        if len(parts) < 2:
            logger.debug(f"({self.source_hint}) Skipping malformed require line: {raw_line.strip()}")
            return
        self._add_dependency(parts[0].strip('"'), parts[1])

    def _parse_replace_spec(self, spec: str):
        # old => new v1.2.3   |   old v1.0.0 => new v1.2.3   |   old => ./local/path
        match = REPLACE_PATTERN.match(spec)
        if not match:
            return
        old_module, _old_version, new_module, new_version = match.groups()
        if new_version and not new_module.startswith('./') and not new_module.startswith('../'):
            self.replacements[old_module] = (new_module, new_version)
        # Local path replacements carry no queryable version

    def _add_dependency(self, module_path: str, version: str):
        normalized_version = self.normalize_version(version)
        self.dependencies.append({'name': module_path, 'version': normalized_version})
        logger.debug(f"Added Go dependency: {module_path} {normalized_version}")

    def _apply_replacements(self):
        for dep in self.dependencies:
            if dep['name'] in self.replacements:
                new_module, new_version = self.replacements[dep['name']]
                logger.info(f"Replacing {dep['name']} with {new_module} {new_version}")
                dep['name'] = new_module
                dep['version'] = self.normalize_version(new_version)

    @staticmethod
    def normalize_version(version: str) -> str:
        """Normalize Go version strings to the form OSV expects (no 'v' prefix)."""
        if version.startswith('v'):
            version = version[1:]

        # Pseudo-versions (e.g., v0.0.0-20191109021931-daa7c04131f5) stay as-is
        if PSEUDO_VERSION_PATTERN.match(version):
            return version

        if version.endswith('+incompatible'):
            version = version[:-len('+incompatible')]

        return version


def parse_go_mod(content: str, source_hint: str = "go.mod") -> List[PackageQuery]:
    return GoModParser(content, source_hint).parse()
