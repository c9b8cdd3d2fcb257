"""
Services package - Gate engine business logic
"""
from gate_intel.services.event_context import event_context_service
from gate_intel.services.quality_service import quality_service
from gate_intel.services.physical_clusterer import physical_clusterer
from gate_intel.services.virtual_clusterer import virtual_clusterer
from gate_intel.services.decision_log_service import decision_log_service
from gate_intel.services.lifecycle_service import lifecycle_service
from gate_intel.services.locks import pipeline_lock_service
from gate_intel.services.gate_pipeline_service import gate_pipeline_service
from gate_intel.services.assignment_service import assignment_service

__all__ = [
    "event_context_service",
    "quality_service",
    "physical_clusterer",
    "virtual_clusterer",
    "decision_log_service",
    "lifecycle_service",
    "pipeline_lock_service",
    "gate_pipeline_service",
    "assignment_service",
]
