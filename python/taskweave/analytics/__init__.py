"""Performance analysis, failure classification and orchestration decisions."""

from taskweave.analytics.decision_engine import (
    DecisionAction,
    DecisionEngine,
    OrchestrationDecision,
)
from taskweave.analytics.failure_classifier import (
    FailureClassifier,
    FailureKind,
    FailurePattern,
)
from taskweave.analytics.performance_analyzer import (
    PerformanceAnalysis,
    PerformanceAnalyzer,
    PerformanceSnapshot,
)
from taskweave.analytics.pattern_learner import (
    PriorityAdjustment,
    SchedulePattern,
    SchedulePatternLearner,
    SchedulingRecommendation,
    Urgency,
)

__all__ = [
    # Decisions
    "DecisionAction",
    "DecisionEngine",
    "OrchestrationDecision",
    # Failure classification
    "FailureClassifier",
    "FailureKind",
    "FailurePattern",
    # Performance analysis
    "PerformanceAnalysis",
    "PerformanceAnalyzer",
    "PerformanceSnapshot",
    # Adaptive scheduling
    "PriorityAdjustment",
    "SchedulePattern",
    "SchedulePatternLearner",
    "SchedulingRecommendation",
    "Urgency",
]
