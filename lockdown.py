#!/usr/bin/env python3
# lockdown.py
import json
import logging
import sys
from typing import Optional

import click

from lockdown_scanner.config import CONFIG_FILENAME, load_config
from lockdown_scanner.exceptions import InvalidInput, ScannerError
from lockdown_scanner.models import SCAN_FULL, SCAN_TYPES, SEVERITIES, ScanResult, ScanSession, Vulnerability
from lockdown_scanner.scanner import ScanController
from lockdown_scanner.service import ScanRequest
from lockdown_scanner.storage import ScanStore

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# --- Reporting ---
SEVERITY_ORDER = {"LOW": 1, "MEDIUM": 2, "HIGH": 3, "CRITICAL": 4}


def _sorted(vulnerabilities: list[Vulnerability]) -> list[Vulnerability]:
    return sorted(
        vulnerabilities,
        key=lambda v: (SEVERITY_ORDER.get(v.severity, 0), v.vulnerability_type, v.affected_component or ''),
        reverse=True,
    )


def _filter(vulnerabilities: list[Vulnerability], threshold: Optional[str]) -> list[Vulnerability]:
    if not threshold:
        return vulnerabilities
    minimum = SEVERITY_ORDER[threshold.upper()]
    return [v for v in vulnerabilities if SEVERITY_ORDER.get(v.severity, 0) >= minimum]


def render_text_report(summary: dict, vulnerabilities: list[Vulnerability]) -> str:
    lines = ["", "--- Scan Report (Text) ---"]
    lines.append(f"Scan ID:        {summary['scanId']}")
    lines.append(f"Security score: {summary['securityScore']}/100")
    lines.append("Counts:         " + ", ".join(
        f"{severity} {summary[f'{severity.lower()}Count']}" for severity in SEVERITIES))
    if summary.get('scanDuration') is not None:
        lines.append(f"Duration:       {summary['scanDuration']} ms")
    if not vulnerabilities:
        lines.append("No vulnerabilities found.")
    else:
        lines.append(f"Found {len(vulnerabilities)} vulnerabilities:")
        for vuln in _sorted(vulnerabilities):
            location = vuln.affected_component or 'N/A'
            if vuln.affected_version:
                location = f"{location}=={vuln.affected_version}"
            elif vuln.raw_data.get('line'):
                location = f"{location}:{vuln.raw_data['line']}"
            lines.append(f"  - [{vuln.vulnerability_type}] {vuln.title}")
            lines.append(f"    Where:    {location}")
            if vuln.cve_id:
                lines.append(f"    CVE:      {vuln.cve_id}")
            score = vuln.cvss_score if vuln.cvss_score is not None else 'N/A'
            lines.append(f"    Severity: {vuln.severity} ({score})")
            if vuln.fixed_version:
                lines.append(f"    Fixed in: {vuln.fixed_version}")
            lines.append(f"    Desc:     {vuln.description}")
            lines.append("-" * 20)
    lines.append("--- End Report ---")
    return "\n".join(lines)


def render_json_report(summary: dict, vulnerabilities: list[Vulnerability]) -> str:
    output = dict(summary)
    output["vulnerabilities"] = [v.to_dict() for v in _sorted(vulnerabilities)]
    return json.dumps(output, indent=2, default=str)


def session_summary(session: ScanSession) -> dict:
    return {
        "scanId": session.id,
        "status": session.status,
        "securityScore": session.security_score,
        "totalVulnerabilities": session.total_vulnerabilities,
        **{f"{severity.lower()}Count": session.severity_counts.get(severity, 0) for severity in SEVERITIES},
        "scanDuration": session.duration_ms,
        "scanTimestamp": session.completed_at.isoformat() if session.completed_at else None,
        "errorMessage": session.error_message,
    }


def _emit(report: str, output_file: Optional[str]):
    if output_file:
        with open(output_file, 'w', encoding='utf-8') as f:
            f.write(report)
        click.secho(f"Report written to {output_file}", fg="green")
    else:
        click.echo(report)


def _open_store(ctx) -> ScanStore:
    config = ctx.obj["config"]
    db_path = ctx.obj.get("db") or config.resolved_database_path()
    try:
        return ScanStore(db_path)
    except ScannerError as e:
        click.secho(f"Could not open scan database: {e}", fg="red", err=True)
        sys.exit(1)


# --- CLI Definition ---
@click.group(context_settings=dict(help_option_names=['-h', '--help']))
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=CONFIG_FILENAME,
              show_default=True, help="YAML configuration file.")
@click.option("--db", "db_path", type=click.Path(dir_okay=False), help="SQLite database holding scan history.")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx, config_path, db_path, verbose):
    """
    LockDown: scans a GitHub repository for vulnerable dependencies,
    insecure code patterns and risky configuration.
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config(config_path)
    ctx.obj["db"] = db_path


@cli.command("scan")
@click.argument("repo_url", type=str)
@click.option("--branch", type=str, help="Branch to scan (defaults to the URL branch, then 'main').")
@click.option("--scan-type", type=click.Choice(list(SCAN_TYPES)), default=SCAN_FULL, show_default=True,
              help="Which detection branches to run.")
@click.option("--format", "output_format", type=click.Choice(['text', 'json'], case_sensitive=False),
              default='text', show_default=True, help="Output format.")
@click.option("--output-file", type=click.Path(dir_okay=False, resolve_path=True), help="Save the report here.")
@click.option("--severity-threshold", type=click.Choice(list(SEVERITIES), case_sensitive=False),
              help="Minimum severity to report.")
@click.pass_context
def scan(ctx, repo_url, branch, scan_type, output_format, output_file, severity_threshold):
    """Scans REPO_URL, e.g. https://github.com/owner/repo/tree/main."""
    try:
        request = ScanRequest.from_payload({"repoUrl": repo_url, "branch": branch, "scanType": scan_type})
        ref = request.repo_ref()
    except InvalidInput as e:
        raise click.BadParameter(str(e), param_hint="REPO_URL")

    store = _open_store(ctx)
    try:
        controller = ScanController(ctx.obj["config"], store)
        result: ScanResult = controller.scan(ref, request.scan_type)
    except ScannerError as e:
        click.secho(f"Scan failed: {e}", fg="red", err=True)
        sys.exit(1)
    finally:
        store.close()

    if result.degraded_sources:
        click.secho(f"Warning: results are partial, unavailable sources: {', '.join(result.degraded_sources)}",
                    fg="yellow", err=True)
    vulnerabilities = _filter(result.vulnerabilities, severity_threshold)
    summary = result.to_response()
    if output_format.lower() == 'json':
        _emit(render_json_report(summary, vulnerabilities), output_file)
    else:
        _emit(render_text_report(summary, vulnerabilities), output_file)


@cli.command("history")
@click.argument("repo_full_name", type=str)
@click.option("--limit", type=int, default=20, show_default=True)
@click.pass_context
def history(ctx, repo_full_name, limit):
    """Lists past scans of REPO_FULL_NAME (owner/repo), newest first."""
    store = _open_store(ctx)
    try:
        sessions = store.list_sessions(repo_full_name, limit)
    except ScannerError as e:
        click.secho(f"Could not read scan history: {e}", fg="red", err=True)
        sys.exit(1)
    finally:
        store.close()
    if not sessions:
        click.echo(f"No scans recorded for {repo_full_name}.")
        return
    for session in sessions:
        started = session.started_at.isoformat() if session.started_at else 'N/A'
        line = f"{session.id}  {started}  {session.status:<9}  score {session.security_score:>3}  " \
               f"total {session.total_vulnerabilities}"
        if session.error_message:
            line += f"  ({session.error_message})"
        click.echo(line)


@cli.command("show")
@click.argument("scan_id", type=str)
@click.option("--format", "output_format", type=click.Choice(['text', 'json'], case_sensitive=False),
              default='text', show_default=True, help="Output format.")
@click.pass_context
def show(ctx, scan_id, output_format):
    """Prints the stored report of SCAN_ID."""
    store = _open_store(ctx)
    try:
        session = store.get_session(scan_id)
        vulnerabilities = store.list_vulnerabilities(scan_id) if session else []
    except ScannerError as e:
        click.secho(f"Could not read scan {scan_id}: {e}", fg="red", err=True)
        sys.exit(1)
    finally:
        store.close()
    if session is None:
        click.secho(f"No scan with id {scan_id}.", fg="red", err=True)
        sys.exit(1)
    summary = session_summary(session)
    if output_format.lower() == 'json':
        click.echo(render_json_report(summary, vulnerabilities))
    else:
        click.echo(render_text_report(summary, vulnerabilities))


if __name__ == '__main__':
    cli()
