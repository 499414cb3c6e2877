"""Planning: stage dependency graph and trigger evaluation."""

from pipewright.planning.stage_graph import StageGraph
from pipewright.planning.triggers import TriggerEvaluator, TriggerEvent, TriggerPlan, validate_definition

__all__ = ["StageGraph", "TriggerEvaluator", "TriggerEvent", "TriggerPlan", "validate_definition"]
