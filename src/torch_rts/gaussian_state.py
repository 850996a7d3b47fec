from __future__ import annotations

import dataclasses
import math
from typing import overload

import torch
import torch.linalg


@dataclasses.dataclass(frozen=True)
class GaussianState:
    """Gaussian state for Kalman filtering and smoothing.

    This dataclass stores a multivariate Gaussian distribution:

        x ~ N(mean, covariance)

    Conventions:
    - State/measurement vectors are **column vectors** with shape ``(..., dim, 1)``.
      This avoids ambiguity with batched matrix multiplications.
    - Leading dimensions ``...`` are treated as **batch dimensions** and may be
      broadcastable across operations.

    States are frozen: every filtering or smoothing step builds a new state, so that
    previously returned states (kept for smoothing) are never modified.

    Attributes:
        mean: Mean of the distribution.
            Shape: ``(..., dim, 1)``
        covariance: Covariance matrix of the distribution.
            Shape: ``(..., dim, dim)``
        precision: Optional precision matrix (inverse covariance).
            Shape: ``(..., dim, dim)``
            It is filled by :meth:`~torch_rts.KalmanFilter.project` to be reused by the update.
    """

    mean: torch.Tensor
    covariance: torch.Tensor
    precision: torch.Tensor | None = None

    @property
    def dim(self) -> int:
        """Dimension of the random variable."""
        return self.mean.shape[-2]

    def __getitem__(self, idx) -> GaussianState:
        """Index/slice along batch dimensions.

        Args:
            idx (Any): Index/slice applied to the leading batch dimensions.

        Returns:
            GaussianState: Indexed GaussianState.
        """
        return GaussianState(
            self.mean[idx], self.covariance[idx], self.precision[idx] if self.precision is not None else None
        )

    @overload
    def to(self, dtype: torch.dtype) -> GaussianState: ...

    @overload
    def to(self, device: torch.device) -> GaussianState: ...

    def to(self, fmt):
        """Convert a GaussianState to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the state to.

        Returns:
            GaussianState: The GaussianState with the right format
        """
        return GaussianState(
            self.mean.to(fmt),
            self.covariance.to(fmt),
            self.precision.to(fmt) if self.precision is not None else None,
        )

    def mahalanobis_squared(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute squared Mahalanobis distance to a measure.

            MAHA^2 = (x - μ)^T P^{-1} (x - μ)

        The stored precision is used when available, otherwise the covariance is inverted
        (and not stored: states are frozen).

        Args:
            measure (torch.Tensor): Measure(s) to evaluate (column vector).
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Squared Mahalanobis distance for broadcasted measures & states
            Shape: ``(...)``
        """
        diff = self.mean - measure
        precision = self.precision if self.precision is not None else self.covariance.inverse()
        return (diff.mT @ precision @ diff)[..., 0, 0]

    def mahalanobis(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute Mahalanobis distance to a measure (square root of `mahalanobis_squared`)."""
        return self.mahalanobis_squared(measure).sqrt()

    def log_likelihood(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute the log-likelihood of the given measure under the Gaussian distribution.

        For dimension ``dim``:

            log p(x) = -1/2 * ( dim*log(2π) + log|Σ| + MAHA^2 )

        Args:
            measure (torch.Tensor): Measure(s) to evaluate (column vector).
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Log-likelihood for broadcasted measures & states
            Shape: ``(...)``
        """
        maha_2 = self.mahalanobis_squared(measure)
        _, log_det = torch.linalg.slogdet(self.covariance)
        return -0.5 * (self.dim * math.log(2 * math.pi) + log_det + maha_2)
