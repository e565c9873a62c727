from sprint_runner.enforcement.challenger import ChallengerReview, parse_verdict
from sprint_runner.enforcement.drift import DriftDetector
from sprint_runner.enforcement.quality_gate import QualityGate

__all__ = ["ChallengerReview", "DriftDetector", "QualityGate", "parse_verdict"]
