#!/usr/bin/env python3
"""
permit-export: Export a Permit.io environment as a Terraform .tf file.

Usage:
    python3 permit_export.py --key permit_key_XXXX --file permit.tf
    python3 permit_export.py                      # PERMIT_API_KEY or saved session, prints to stdout
    python3 permit_export.py -k KEY --api-url https://api.eu-central-1.permit.io -f permit.tf
"""

import argparse
import logging
import os
import signal
import sys
import tempfile
import threading
from typing import Callable, List, Optional

from generators import GENERATORS, WarningCollector
from hcl_format import hcl_string
from permit_client import (
    DEFAULT_API_URL,
    DEFAULT_TIMEOUT,
    PermitClient,
    Scope,
    current_token,
    error_message,
    validate_api_key_scope,
)

logger = logging.getLogger(__name__)

# Run states, reported through the status callback.
STATE_VALIDATING = "validating"
STATE_EXPORTING = "exporting"
STATE_WRITING = "writing"
STATE_COMPLETE = "complete"
STATE_ERROR = "error"

PROVIDER_SOURCE = "permitio/permit-io"
PROVIDER_VERSION = "~> 0.1.0"

StatusCallback = Callable[[str, str], None]


class ExportResult:
    """Outcome of one export run."""

    def __init__(self, hcl: str = "", warnings: Optional[List[str]] = None,
                 error: Optional[str] = None, scope: Optional[Scope] = None):
        self.hcl = hcl
        self.warnings = warnings or []
        self.error = error
        self.scope = scope

    @property
    def ok(self) -> bool:
        return self.error is None


def render_header(scope: Optional[Scope]) -> str:
    """Top of the artifact: scope comments, provider requirements and config."""
    scope = scope or Scope()
    return f'''# Environment: {scope.environment_id or "unknown"}
# Project: {scope.project_id or "unknown"}
# Organization: {scope.organization_id or "unknown"}

terraform {{
  required_providers {{
    permitio = {{
      source  = {hcl_string(PROVIDER_SOURCE)}
      version = {hcl_string(PROVIDER_VERSION)}
    }}
  }}
}}

variable "permit_api_key" {{
  description = "Permit.io environment API key"
  type        = string
  sensitive   = true
}}

provider "permitio" {{
  api_key = var.permit_api_key
}}'''


def build_artifact(scope: Optional[Scope], fragments: List[str]) -> str:
    """Join the header and every non-empty section with blank lines."""
    sections = [render_header(scope)]
    sections.extend(f.strip("\n") for f in fragments if f and f.strip())
    return "\n\n".join(sections) + "\n"


def _current_umask() -> int:
    umask = os.umask(0)
    os.umask(umask)
    return umask


def write_artifact(path: str, content: str):
    """Write content to path, leaving any existing file untouched on failure."""
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".permit-export-", suffix=".tf")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        # mkstemp creates the file 0600; give it the mode open() would have.
        os.chmod(tmp_path, 0o666 & ~_current_umask())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def _log_status(state: str, message: str):
    logger.info(f"[{state}] {message}")


def run_export(key: Optional[str] = None, file: Optional[str] = None,
               api_url: str = DEFAULT_API_URL, timeout: float = DEFAULT_TIMEOUT,
               insecure: bool = False, status: Optional[StatusCallback] = None,
               cancel_event: Optional[threading.Event] = None) -> ExportResult:
    """Run the full export pipeline.

    Only a missing or invalid key, a cancelled run and a failed file write are
    errors; everything that goes wrong inside a generator ends up as a
    warning and the export carries on.
    """
    report = status or _log_status
    warnings = WarningCollector()

    def fail(message: str, scope: Optional[Scope] = None) -> ExportResult:
        report(STATE_ERROR, message)
        return ExportResult(warnings=warnings.warnings, error=message, scope=scope)

    key = key or current_token()
    if not key:
        return fail("No API key provided. Please provide a key or login first.")

    report(STATE_VALIDATING, "Validating API key...")
    try:
        validation = validate_api_key_scope(key, "environment", api_url=api_url,
                                            timeout=timeout, insecure=insecure)
    except Exception as e:
        logger.debug("Scope validation failed", exc_info=True)
        return fail(f"Failed to export configuration: {error_message(e)}")
    if not validation.valid or validation.scope is None:
        return fail(f"Invalid API key: {validation.error}")
    scope = validation.scope

    report(STATE_VALIDATING, "Initializing Permit client...")
    client = PermitClient(key, api_url=api_url, timeout=timeout, insecure=insecure,
                          cancel_event=cancel_event)
    client.bind_scope(scope)

    fragments = []
    for label, generator in GENERATORS:
        if client.cancelled:
            break
        report(STATE_EXPORTING, f"Exporting {label}...")
        before = len(warnings)
        fragments.append(generator(client, warnings))
        for warning in warnings.warnings[before:]:
            report(STATE_EXPORTING, f"Warning: {warning}")

    if client.cancelled:
        return fail("Export cancelled", scope)

    hcl = build_artifact(scope, fragments)

    if file:
        report(STATE_WRITING, f"Saving to {file}...")
        try:
            write_artifact(file, hcl)
        except OSError as e:
            return fail(f"Failed to write {file}: {e}", scope)
    else:
        report(STATE_WRITING, "Writing to standard output...")
        sys.stdout.write(hcl)
        sys.stdout.flush()

    report(STATE_COMPLETE, "Export completed successfully!")
    return ExportResult(hcl=hcl, warnings=warnings.warnings, scope=scope)


def _print_warnings(title: str, warnings: List[str]):
    if not warnings:
        return
    print(title, file=sys.stderr)
    for warning in warnings:
        print(f"  - {warning}", file=sys.stderr)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="permit-export",
        description="Export a Permit.io environment as Terraform HCL"
    )
    parser.add_argument("--key", "-k", default=None,
                        help="API key to be used for the environment export "
                             "(default: PERMIT_API_KEY env var or the saved session)")
    parser.add_argument("--file", "-f", default=None,
                        help="File path to save the exported HCL content (default: stdout)")
    parser.add_argument("--api-url", default=os.environ.get("PERMIT_API_URL", DEFAULT_API_URL),
                        help=f"Permit API URL (or PERMIT_API_URL env var, default: {DEFAULT_API_URL})")
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT,
                        help=f"Per-request timeout in seconds (default: {DEFAULT_TIMEOUT})")
    parser.add_argument("--insecure", action="store_true",
                        help="Skip TLS certificate verification")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable verbose output")

    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)

    def show_status(state: str, message: str):
        if state not in (STATE_ERROR, STATE_COMPLETE):
            print(f"  {message}", file=sys.stderr)

    # First Ctrl-C stops the export after the in-flight request, the second aborts.
    cancel_event = threading.Event()

    def on_interrupt(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        cancel_event.set()
        print("  Cancelling export (press Ctrl-C again to abort)...", file=sys.stderr)

    previous_handler = signal.signal(signal.SIGINT, on_interrupt)
    try:
        result = run_export(
            key=args.key,
            file=args.file,
            api_url=args.api_url,
            timeout=args.timeout,
            insecure=args.insecure,
            status=show_status,
            cancel_event=cancel_event,
        )
    except KeyboardInterrupt:
        print("Error: Export aborted", file=sys.stderr)
        return 130
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    if result.error:
        print(f"Error: {result.error}", file=sys.stderr)
        _print_warnings("Warnings:", result.warnings)
        return 1

    print("Export completed successfully!", file=sys.stderr)
    if args.file:
        print(f"HCL content has been saved to: {args.file}", file=sys.stderr)
    _print_warnings("Warnings during export:", result.warnings)
    return 0


if __name__ == "__main__":
    sys.exit(main())
