"""Torch-RTS: Kalman filtering and Rauch-Tung-Striebel smoothing in PyTorch.

torch-rts estimates the hidden state of a linear Gaussian dynamical system from noisy
discrete-time measures (forward Kalman pass) and refines every estimate with all the measures,
past and future (backward Rauch-Tung-Striebel pass).

Key features
------------
- **Filtering and RTS smoothing**: the forward pass records the predicted and filtered states of
  every step, which the smoother consumes without modifying them.
- **Time-varying models**: ``F, Q, H, R`` are given per step by a model
  (:class:`~torch_rts.LinearModel`, :class:`~torch_rts.TimeVaryingLinearModel` or any object
  implementing :class:`~torch_rts.LinearSystemModel`).
- **Missing measures**: a step without measure (None or NaN) is a pure prediction.
- **Explicit failures**: singular matrices raise :class:`~torch_rts.SingularMatrixError` with the
  step at which they occurred, never NaN estimates.
- **Broadcast-friendly API**: leading batch dimensions allow to process independent sequences at once.

Numerical notes
---------------
Consider running in ``float64`` and enabling ``joseph_update=True`` on
:class:`~torch_rts.KalmanFilter` if you face numerical instabilities.

Notes on shapes
---------------
torch-rts uses column vectors. State and measurement vectors must have shape
``(..., dim, 1)``.
"""

from .errors import DimensionError, SingularMatrixError, TorchRtsError
from .gaussian_state import GaussianState
from .kalman_filter import KalmanFilter
from .model import LinearModel, LinearSystemModel, TimeVaryingLinearModel
from .records import ForwardRecord, SmoothedRecord

__all__ = [
    "DimensionError",
    "ForwardRecord",
    "GaussianState",
    "KalmanFilter",
    "LinearModel",
    "LinearSystemModel",
    "SingularMatrixError",
    "SmoothedRecord",
    "TimeVaryingLinearModel",
    "TorchRtsError",
]
__version__ = "0.1.0"
