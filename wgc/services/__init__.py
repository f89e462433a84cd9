"""
Persistence boundary services.
"""

from wgc.services.workflow_document import WorkflowDocumentService

__all__ = ["WorkflowDocumentService"]
