"""Kestrel: Keras-style Sequential models trained on JAX.

Usage:
    from kestrel import Sequential, Dataset
    from kestrel.layers import Input, Dense, Activations
    from kestrel.losses import Losses
    from kestrel.metrics import Metrics
    from kestrel.optimizers import Adam
"""

from .callbacks import Callback, EarlyStopping
from .config import TrainingConfig, load_config, save_config
from .dataset import DataBatch, Dataset
from .history import (
    BatchEvent,
    BatchTrainingEvent,
    EpochTrainingEvent,
    EvaluationResult,
    History,
    TrainingHistory,
)
from .inference import InferenceModel
from .model import Sequential, SavingFormat, WritingMode

__version__ = "0.1.0"

__all__ = [
    'Sequential',
    'SavingFormat',
    'WritingMode',
    'InferenceModel',
    'Dataset',
    'DataBatch',
    'Callback',
    'EarlyStopping',
    'TrainingConfig',
    'save_config',
    'load_config',
    'BatchEvent',
    'BatchTrainingEvent',
    'EpochTrainingEvent',
    'EvaluationResult',
    'History',
    'TrainingHistory',
]
