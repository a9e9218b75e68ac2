"""Sequential model, its persistence formats and JSON configuration."""

from .persistence import SavingFormat, WritingMode
from .sequential import Sequential
from .serialization import load_model_configuration, model_to_config

__all__ = [
    'Sequential',
    'SavingFormat',
    'WritingMode',
    'load_model_configuration',
    'model_to_config',
]
