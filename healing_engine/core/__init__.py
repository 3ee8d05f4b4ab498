"""
Self-Healing Engine - Core Package
"""

from healing_engine.core.engine import SelfHealingEngine, ScanOutcome, build_engine
from healing_engine.core.job_runner import JobRunner
from healing_engine.core.safety_gate import SafetyGate
from healing_engine.core.pattern_detector import PatternDetector
from healing_engine.core.approval_workflow import ApprovalWorkflow
from healing_engine.core.learning import LearningService

__all__ = [
    "SelfHealingEngine",
    "ScanOutcome",
    "build_engine",
    "JobRunner",
    "SafetyGate",
    "PatternDetector",
    "ApprovalWorkflow",
    "LearningService",
]
