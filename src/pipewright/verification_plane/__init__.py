"""Verification plane: quality gate evaluation."""

from pipewright.verification_plane.quality_gate import QualityGateEvaluator

__all__ = ["QualityGateEvaluator"]
