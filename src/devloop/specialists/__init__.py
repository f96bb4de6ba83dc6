from devloop.specialists.base import SpecialistAgent, SpecialistResponse
from devloop.specialists.implementer import ImplementerAgent
from devloop.specialists.reviewer import ReviewerAgent

__all__ = [
    "ImplementerAgent",
    "ReviewerAgent",
    "SpecialistAgent",
    "SpecialistResponse",
]
