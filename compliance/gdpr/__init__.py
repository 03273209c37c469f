"""Data lifecycle services: export, scheduled deletion, recovery,
verification and deletion certificates.
"""

from compliance.gdpr.certificates import certificate_issuer
from compliance.gdpr.executor import deletion_executor
from compliance.gdpr.export import export_pipeline
from compliance.gdpr.recovery import recovery_manager
from compliance.gdpr.scheduler import deletion_scheduler
from compliance.gdpr.verifier import deletion_verifier

__all__ = [
    "certificate_issuer",
    "deletion_executor",
    "deletion_scheduler",
    "deletion_verifier",
    "export_pipeline",
    "recovery_manager",
]
