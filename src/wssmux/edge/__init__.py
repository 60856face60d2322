"""Edge node: nginx routing rules and certificate lifecycle."""

from .certs import CertificateInfo, CertificateManager
from .lifecycle import DomainArtifacts, DomainState, EdgeLifecycleManager
from .nginx import DefaultRule, EdgeSettings, NginxManager, RedirectRule, TLSRule

__all__ = [
    "CertificateInfo",
    "CertificateManager",
    "DefaultRule",
    "DomainArtifacts",
    "DomainState",
    "EdgeLifecycleManager",
    "EdgeSettings",
    "NginxManager",
    "RedirectRule",
    "TLSRule",
]
