"""Constant-derivative motion models.

The state holds, for each spatial dimension, a value and its derivatives up to ``order``
(position, velocity, acceleration, ...). Only the values are measured. The highest derivative is
either constant with additive noise, or driven by a zero-mean white noise on the next derivative
(``expected_model=True``).

Example:
```python
    # 1D constant velocity, measuring the position with a unit noise
    kf = constant_kalman_filter(1.0, 0.1, dim=1, order=1)
    smoothed = kf.smooth(initial, measures)
```
"""

from __future__ import annotations

import math

import torch

from .kalman_filter import KalmanFilter
from .model import LinearModel


def interleave(x: torch.Tensor, size: int) -> torch.Tensor:
    """Interleave blocks of ``size`` consecutive rows.

    Rows ``0, 1, ..., k*size-1`` are reordered as
    ``0, size, ..., (k-1)*size, 1, 1+size, ..., size-1, ..., k*size-1``.
    It switches a state ordered by dimension (``x, x', y, y'``) to a state ordered by
    derivative (``x, y, x', y'``).

    Args:
        x (torch.Tensor): Tensor to reorder.
            Shape: ``(k * size, ...)``
        size (int): Block size.

    Returns:
        torch.Tensor: Reordered tensor.
            Shape: ``(k * size, ...)``
    """
    return x.reshape(-1, size, *x.shape[1:]).transpose(0, 1).reshape(x.shape)


def _taylor_coefficients(length: int, dt: float) -> torch.Tensor:
    """Return ``(1, dt, dt^2 / 2, ..., dt^(length-1) / (length-1)!)``."""
    return torch.tensor([dt**k / math.factorial(k) for k in range(length)])


def process_matrix(order: int, dt=1.0, approximate=False) -> torch.Tensor:
    r"""Transition matrix ``F`` of a single dimension.

    From the Taylor expansion, with null (order+1)-th derivative:

        x^{(i)}(t + dt) = \sum_{k=0}^{order - i} \frac{dt^k}{k!} x^{(i+k)}(t)

    For instance, constant velocity (``order=1``) gives ``[[1, dt], [0, 1]]``.

    Args:
        order (int): Highest derivative in the state.
        dt (float): Time step duration.
            Default: 1.0
        approximate (bool): Keep only first order terms (``x^{(i)} += dt * x^{(i+1)}``).
            Default: False

    Returns:
        torch.Tensor: Process matrix.
            Shape: ``(order + 1, order + 1)``
    """
    coefficients = _taylor_coefficients(order + 1, dt)
    if approximate:
        coefficients[2:] = 0

    matrix = torch.zeros(order + 1, order + 1)
    for k in range(order + 1):
        matrix += torch.diag(coefficients[k].repeat(order + 1 - k), k)
    return matrix


def process_noise(std: float, order: int, dt=1.0, expected_model=False, approximate=False) -> torch.Tensor:
    r"""Process noise covariance ``Q`` of a single dimension.

    The noise ``w ~ N(0, std^2)`` is applied on the order-th derivative (default) or on the
    (order+1)-th derivative (``expected_model``) and integrated through the Taylor expansion:
    ``Q = std^2 g gᵀ`` with ``g = (dt^order / order!, ..., dt, 1)`` (shifted by one power of dt for
    the expected model).

    Args:
        std (float): Standard deviation of the noise.
        order (int): Highest derivative in the state.
        dt (float): Time step duration.
            Default: 1.0
        expected_model (bool): Noise on the (order+1)-th derivative.
            Default: False
        approximate (bool): Only the highest derivative receives noise.
            Default: False

    Returns:
        torch.Tensor: Process noise covariance.
            Shape: ``(order + 1, order + 1)``
    """
    coefficients = _taylor_coefficients(order + 1 + expected_model, dt)
    if approximate:
        coefficients[1 + expected_model :] = 0

    gain = coefficients[int(expected_model) :].flip(0)
    return std**2 * gain[:, None] @ gain[None]


def constant_model(
    measurement_std: float | torch.Tensor,
    process_std: float | torch.Tensor,
    *,
    dim=2,
    order=1,
    dt=1.0,
    expected_model=False,
    order_by_dim=False,
    approximate=False,
) -> LinearModel:
    """Build a constant-derivative :class:`LinearModel`.

    The state dimension is ``(order + 1) * dim`` and the measure dimension is ``dim``.
    By default the state is ordered by derivative (``x, y, x', y'``), set ``order_by_dim``
    to order it by dimension (``x, x', y, y'``).

    Args:
        measurement_std (float | torch.Tensor): Measurement noise std.
            Shape: broadcastable to ``(dim,)``
        process_std (float | torch.Tensor): Process noise std (See `process_noise`).
            Shape: broadcastable to ``(dim,)``
        dim (int): Number of independent spatial dimensions.
            Default: 2
        order (int): Highest derivative in the state (0: position, 1: velocity, 2: acceleration...).
            Default: 1
        dt (float): Time step duration.
            Default: 1.0
        expected_model (bool): Noise on the (order+1)-th derivative. See `process_noise`.
            Default: False
        order_by_dim (bool): State ordering convention.
            Default: False
        approximate (bool): First order approximation. See `process_matrix`.
            Default: False

    Returns:
        LinearModel: The time-invariant model.
    """
    measurement_std = torch.broadcast_to(torch.as_tensor(measurement_std, dtype=torch.get_default_dtype()), (dim,))
    process_std = torch.broadcast_to(torch.as_tensor(process_std, dtype=torch.get_default_dtype()), (dim,))

    state_dim = (order + 1) * dim

    # Measured values are the first entry of each dimension block (before reordering)
    measurement_matrix = torch.zeros(dim, state_dim)
    measurement_matrix[torch.arange(dim), torch.arange(dim) * (order + 1)] = 1.0
    measurement_noise = torch.diag(measurement_std**2)

    transition = torch.block_diag(*(process_matrix(order, dt, approximate) for _ in range(dim)))
    noise = torch.block_diag(
        *(process_noise(process_std[k].item(), order, dt, expected_model, approximate) for k in range(dim))
    )

    if not order_by_dim:
        transition = interleave(interleave(transition, order + 1).T, order + 1).T
        noise = interleave(interleave(noise, order + 1).T, order + 1).T
        measurement_matrix = interleave(measurement_matrix.T, order + 1).T

    return LinearModel(
        transition.contiguous(),
        measurement_matrix.contiguous(),
        noise.contiguous(),
        measurement_noise.contiguous(),
    )


def constant_kalman_filter(
    measurement_std: float | torch.Tensor,
    process_std: float | torch.Tensor,
    *,
    dim=2,
    order=1,
    dt=1.0,
    expected_model=False,
    order_by_dim=False,
    approximate=False,
    joseph_update=False,
) -> KalmanFilter:
    """Create a :class:`KalmanFilter` over a constant-derivative model (See `constant_model`)."""
    model = constant_model(
        measurement_std,
        process_std,
        dim=dim,
        order=order,
        dt=dt,
        expected_model=expected_model,
        order_by_dim=order_by_dim,
        approximate=approximate,
    )
    return KalmanFilter(model, joseph_update=joseph_update)
