# rimi/__init__.py

from . import errors
from . import utils
from . import layers
from . import models
from . import data
from . import interpret
from . import importance

__version__ = "0.1.0"

# Expose key classes at the top level of the package
from .errors import (
    RimiError,
    DatasetError,
    ShapeMismatchError,
    InsufficientInputsError,
    NotFoundError,
    InsufficientSamplesError,
    TrainingFailedError,
    DegenerateVarianceError
)
from .utils import (
    enumerate_pairs,
    pair_to_index,
    anchor_partner_slots,
    slot_index,
    get_term_names,
    build_input_matrix
)
from .layers import (
    GeneralizedWeightCalculator,
    InteractionDecomposer,
    decompose
)
from .models import SigmoidMLP, train_network
from .data import load_dataset, validate_dataset, split_dataset
from .importance import (
    ImportanceAggregator,
    ImportanceRow,
    RepeatedRunAggregator,
    SummaryTable,
    rimi
)
from .interpret import (
    plot_relative_importance,
    plot_relative_importance_report,
    plot_generalized_weights
)

__all__ = [
    # Errors
    "RimiError",
    "DatasetError",
    "ShapeMismatchError",
    "InsufficientInputsError",
    "NotFoundError",
    "InsufficientSamplesError",
    "TrainingFailedError",
    "DegenerateVarianceError",
    # Pair indexing
    "enumerate_pairs",
    "pair_to_index",
    "anchor_partner_slots",
    "slot_index",
    "get_term_names",
    "build_input_matrix",
    # Layers
    "GeneralizedWeightCalculator",
    "InteractionDecomposer",
    "decompose",
    # Models
    "SigmoidMLP",
    "train_network",
    # Data
    "load_dataset",
    "validate_dataset",
    "split_dataset",
    # Importance
    "ImportanceAggregator",
    "ImportanceRow",
    "RepeatedRunAggregator",
    "SummaryTable",
    "rimi",
    # Interpretation
    "plot_relative_importance",
    "plot_relative_importance_report",
    "plot_generalized_weights",
    # Submodules
    "errors",
    "utils",
    "layers",
    "models",
    "data",
    "interpret",
    "importance"
]
