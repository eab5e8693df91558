from typing import Union

from .file_state import FilePromotionStateRepository
from .in_memory import InMemoryPromotionStateRepository
from .promotion_state import MongoPromotionStateRepository

PromotionStateRepository = Union[
    MongoPromotionStateRepository,
    FilePromotionStateRepository,
    InMemoryPromotionStateRepository,
]

__all__ = [
    "FilePromotionStateRepository",
    "InMemoryPromotionStateRepository",
    "MongoPromotionStateRepository",
    "PromotionStateRepository",
]
