# glucocast ML Package
# Normalization, the pattern library and the recurrent sequence model

from .feature_engineering import (
    GLUCOSE_MAX,
    GLUCOSE_MIN,
    GlucoseTimeline,
    denormalize_glucose,
    normalize_glucose,
)
from .sequence_model import SequenceModel
from .pattern_engine import (
    GlucoseSequence,
    LearnedPattern,
    PatternLearningEngine,
    PatternLibrary,
)
from .inference import (
    LinearPredictor,
    calculate_trend,
)

__all__ = [
    # Feature Engineering
    "GLUCOSE_MAX",
    "GLUCOSE_MIN",
    "GlucoseTimeline",
    "denormalize_glucose",
    "normalize_glucose",
    # Models
    "SequenceModel",
    "GlucoseSequence",
    "LearnedPattern",
    "PatternLearningEngine",
    "PatternLibrary",
    # Inference
    "LinearPredictor",
    "calculate_trend",
]
