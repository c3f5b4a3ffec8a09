from .base import BaseAgent, PromptAgent
from .narrator import NarratorAgent
from .pipeline import execute_with_pipeline, structural_validation
from .problem_decomposer import ProblemDecomposerAgent
from .socratic import SocraticAgent
from .visualizer import VisualizerAgent

# Concrete implementation per configured agent id; other ids use PromptAgent.
AGENT_CLASSES = {
    "visualizer": VisualizerAgent,
    "narrator": NarratorAgent,
    "problem-decomposer": ProblemDecomposerAgent,
    "socratic": SocraticAgent,
}

__all__ = [
    "AGENT_CLASSES",
    "BaseAgent",
    "NarratorAgent",
    "ProblemDecomposerAgent",
    "PromptAgent",
    "SocraticAgent",
    "VisualizerAgent",
    "execute_with_pipeline",
    "structural_validation",
]
