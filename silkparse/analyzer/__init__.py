"""Document analysis: dimensions, print-effect layers, masks and manifests."""

from .document import Dimensions, Document
from .effects import EffectClassifier, EffectMatch, EffectRule
from .engine import DocumentAnalyzer, Layer, calculate_confidence
from .render import Bounds, PdftocairoRenderer, Renderer, analyze_alpha

__all__ = [
    "Bounds",
    "Dimensions",
    "Document",
    "DocumentAnalyzer",
    "EffectClassifier",
    "EffectMatch",
    "EffectRule",
    "Layer",
    "PdftocairoRenderer",
    "Renderer",
    "analyze_alpha",
    "calculate_confidence",
]
