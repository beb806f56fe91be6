"""Certificate authority client adapters.

Public API::

    from certflow.ca import AcmeShTool, ExternalCertTool
"""

from certflow.ca.acme_sh import AcmeShTool
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
from certflow.ca.output_parser import extract_challenge

__all__ = [
    "AcmeShTool",
    "AlreadyExists",
    "CertPaths",
    "ChallengeIssued",
    "ExternalCertTool",
    "Failure",
    "PropagationPending",
    "Success",
    "ToolResult",
    "extract_challenge",
]
