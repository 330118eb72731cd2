from sdiffuse.scheduler.base import DiscreteScheduler, training_sigmas
from sdiffuse.scheduler.deterministic import LMSDiscreteScheduler, lms_coefficient
from sdiffuse.scheduler.stochastic import EulerAncestralDiscreteScheduler

__all__ = [
    "DiscreteScheduler",
    "EulerAncestralDiscreteScheduler",
    "LMSDiscreteScheduler",
    "get_scheduler",
    "lms_coefficient",
    "training_sigmas",
]


def get_scheduler(name: str, seed: int = 0) -> DiscreteScheduler:
    if name == "lms":
        return LMSDiscreteScheduler()
    if name == "euler_ancestral":
        return EulerAncestralDiscreteScheduler(seed=seed)
    raise ValueError(f"Unknown scheduler '{name}'. Available: lms, euler_ancestral")
