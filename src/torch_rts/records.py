"""Per-step results of the forward (filtering) and backward (smoothing) passes."""

from __future__ import annotations

import dataclasses
from collections.abc import Sequence

import torch

from .gaussian_state import GaussianState


@dataclasses.dataclass(frozen=True)
class ForwardRecord:
    """Result of one predict/update cycle.

    Attributes:
        step (int): Time step of the record.
        predicted (GaussianState): Prior state, before seeing the measure of the step.
        filtered (GaussianState): Posterior state, after the update. Equal to ``predicted``
            where the measure is missing.
        observed (torch.Tensor): Boolean tensor telling which items of the batch were updated.
            Shape: ``(...)``
        log_likelihood (torch.Tensor): Log-likelihood of the measure under the predicted measure
            distribution ``N(H mu, S)``. Zero where the measure is missing.
            Shape: ``(...)``
    """

    step: int
    predicted: GaussianState
    filtered: GaussianState
    observed: torch.Tensor
    log_likelihood: torch.Tensor


@dataclasses.dataclass(frozen=True)
class SmoothedRecord:
    """Result of one RTS backward step.

    Attributes:
        step (int): Time step of the record.
        smoothed (GaussianState): Smoothed state, using all the measures.
        gain (torch.Tensor | None): Smoother gain ``C_k`` used to reach this state from the next
            smoothed state. None for the last step (smoothed == filtered).
            Shape: ``(..., dim_x, dim_x)``
    """

    step: int
    smoothed: GaussianState
    gain: torch.Tensor | None


def stack(states: Sequence[GaussianState]) -> GaussianState:
    """Stack states along a new leading time dimension.

    Example:
    ```python
        records = kf.filter(initial, measures)
        filtered = stack([record.filtered for record in records])
        filtered.mean  # Shape: (T, ..., dim_x, 1)
    ```

    Args:
        states (Sequence[GaussianState]): States to stack. Batch shapes must be broadcastable.

    Returns:
        GaussianState: Time-major state.
            Shape (mean): ``(T, ..., dim, 1)``
            Shape (covariance): ``(T, ..., dim, dim)``
    """
    if not states:
        raise ValueError("Cannot stack an empty sequence of states")

    batch = torch.broadcast_shapes(
        *(state.mean.shape[:-2] for state in states), *(state.covariance.shape[:-2] for state in states)
    )
    dim = states[0].dim
    means = [state.mean.expand(*batch, dim, 1) for state in states]
    covariances = [state.covariance.expand(*batch, dim, dim) for state in states]
    return GaussianState(torch.stack(means), torch.stack(covariances))


def log_likelihood(records: Sequence[ForwardRecord]) -> torch.Tensor:
    """Total log-likelihood of the measures, ``log p(z_1, ..., z_T)``, from a forward pass.

    Returns:
        torch.Tensor: Log-likelihood of each sequence of the batch.
            Shape: ``(...)``
    """
    return sum((record.log_likelihood for record in records), torch.tensor(0.0))
