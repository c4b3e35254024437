"""
Models package for the Collections Escalation Sequencer.
"""
from .policy import CollectionsPolicy
from .sequence import Sequence, SequenceStatus, StepRecord, StepStatus

__all__ = ["CollectionsPolicy", "Sequence", "SequenceStatus", "StepRecord", "StepStatus"]
