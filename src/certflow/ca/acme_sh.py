"""``acme.sh`` adapter.

Runs the client as a subprocess and folds its exit code and text
output into a :data:`~certflow.ca.base.ToolResult`.  This module is the
only place that knows acme.sh's wording.

Usage::

    tool = AcmeShTool(settings.acme)
    result = tool.generate_challenge(["example.com", "*.example.com"])
"""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING

from certflow.ca.base import (
    AlreadyExists,
    CertPaths,
    ChallengeIssued,
    ExternalCertTool,
    Failure,
    PropagationPending,
    Success,
    ToolResult,
)
from certflow.ca.output_parser import extract_challenge, strip_ansi

if TYPE_CHECKING:
    from certflow.config.settings import AcmeToolSettings

log = logging.getLogger(__name__)

# acme.sh refuses to re-issue a certificate it already manages.
_EXISTS_RE = re.compile(
    r"already have a cert|domains not changed|skip, next renewal time",
    re.IGNORECASE,
)
# The CA looked up the TXT record and did not find the expected value.
_PENDING_RE = re.compile(r"incorrect txt record", re.IGNORECASE)

_MANUAL_DNS_FLAG = "--yes-I-know-dns-manual-mode-enough-go-ahead-please"
_SUMMARY_LINES = 5
_SUMMARY_MAX = 500


def summarize(output: str) -> str:
    """Return the last few non-empty lines of *output*, truncated."""
    lines = [line.strip() for line in strip_ansi(output).splitlines() if line.strip()]
    text = "\n".join(lines[-_SUMMARY_LINES:])
    if len(text) > _SUMMARY_MAX:
        text = text[-_SUMMARY_MAX:]
    return text or "no output"


class AcmeShTool(ExternalCertTool):
    """:class:`ExternalCertTool` backed by the ``acme.sh`` shell client.

    Parameters
    ----------
    settings:
        The ``acme`` configuration section.

    """

    def __init__(self, settings: AcmeToolSettings) -> None:
        self._settings = settings

    # -- paths ---------------------------------------------------------------

    def paths_for(self, domain: str) -> CertPaths:
        directory = Path(self._settings.export_path) / domain
        return CertPaths(
            directory=str(directory),
            cert=str(directory / "cert.pem"),
            key=str(directory / "privkey.pem"),
            fullchain=str(directory / "fullchain.pem"),
            ca=str(directory / "ca.pem"),
        )

    # -- operations ----------------------------------------------------------

    def generate_challenge(self, domains: list[str]) -> ToolResult:
        args = ["--issue", "--dns", "--dry-run", *self._domain_args(domains), *self._server_args()]
        if self._settings.key_length:
            args += ["--keylength", self._settings.key_length]
        args.append(_MANUAL_DNS_FLAG)

        ok, output = self._run(args)
        if _EXISTS_RE.search(output):
            return AlreadyExists(output=output)
        challenge = extract_challenge(output)
        if challenge is not None:
            return ChallengeIssued(challenge=challenge, output=output)
        if ok:
            return Failure("acme.sh did not print a TXT record", output=output)
        return Failure(summarize(output), output=output)

    def renew(self, domains: list[str]) -> ToolResult:
        args = ["--renew", *self._domain_args(domains), *self._server_args(), _MANUAL_DNS_FLAG]
        ok, output = self._run(args)
        if _PENDING_RE.search(output):
            return PropagationPending(output=output)
        # A skipped renewal means acme.sh already holds a valid certificate.
        if ok or _EXISTS_RE.search(output):
            return Success(output=output)
        return Failure(summarize(output), output=output)

    def install(self, domain: str, paths: CertPaths) -> ToolResult:
        try:
            Path(paths.directory).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            return Failure(f"Cannot create {paths.directory}: {exc}")

        args = [
            "--install-cert",
            "-d",
            domain,
            "--key-file",
            paths.key,
            "--fullchain-file",
            paths.fullchain,
            "--cert-file",
            paths.cert,
            "--ca-file",
            paths.ca,
        ]
        if self._settings.reload_command:
            args += ["--reloadcmd", self._settings.reload_command]
        ok, output = self._run(args)
        if ok:
            return Success(output=output)
        return Failure(summarize(output), output=output)

    def remove(self, domain: str) -> ToolResult:
        ok, output = self._run(["--remove", "-d", domain])
        if ok:
            return Success(output=output)
        return Failure(summarize(output), output=output)

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def _domain_args(domains: list[str]) -> list[str]:
        args: list[str] = []
        for domain in domains:
            args += ["-d", domain]
        return args

    def _server_args(self) -> list[str]:
        return ["--server", self._settings.server] if self._settings.server else []

    def _run(self, args: list[str]) -> tuple[bool, str]:
        """Run acme.sh with *args*; return ``(exit code == 0, combined output)``.

        A timeout or a missing binary is reported as a failed run with
        the reason as output.
        """
        command = [self._settings.path, *args]
        log.debug("Running %s", " ".join(command))
        try:
            proc = subprocess.run(  # noqa: S603
                command,
                check=False,
                timeout=self._settings.timeout_seconds,
                capture_output=True,
                text=True,
            )
        except subprocess.TimeoutExpired:
            log.warning("acme.sh %s timed out after %ss", args[0], self._settings.timeout_seconds)
            return False, f"acme.sh timed out after {self._settings.timeout_seconds}s"
        except OSError as exc:
            log.error("Cannot run acme.sh at %s: %s", self._settings.path, exc)
            return False, f"Cannot run acme.sh: {exc}"

        output = f"{proc.stdout or ''}\n{proc.stderr or ''}".strip()
        log.info("acme.sh %s exited with %d", args[0], proc.returncode)
        return proc.returncode == 0, output
