"""Small linear algebra helpers on (batches of) symmetric matrices."""

from __future__ import annotations

import torch
import torch.linalg

from .errors import SingularMatrixError


def symmetrize(matrix: torch.Tensor) -> torch.Tensor:
    """Return the symmetric part ``(A + Aᵀ) / 2`` of a matrix.

    Args:
        matrix (torch.Tensor): Square matrix.
            Shape: ``(..., dim, dim)``

    Returns:
        torch.Tensor: Symmetric matrix with the same shape.
    """
    return 0.5 * (matrix + matrix.mT)


def identity_like(matrix: torch.Tensor) -> torch.Tensor:
    """Identity matrix sharing the last dimension, dtype and device of ``matrix``."""
    return torch.eye(matrix.shape[-1], dtype=matrix.dtype, device=matrix.device)


def default_rtol(matrix: torch.Tensor) -> float:
    """Default tolerance on the reciprocal condition number: ``dim * eps``."""
    return matrix.shape[-1] * torch.finfo(matrix.dtype).eps


def inverse_ex(matrix: torch.Tensor, *, rtol: float | None = None) -> tuple[torch.Tensor, torch.Tensor]:
    """Invert a (batch of) symmetric matrices and flag the singular ones.

    A matrix is considered singular if the LU factorization finds a zero pivot, if the
    computed inverse is not finite, or if its reciprocal condition number
    ``σ_min / σ_max`` is below ``rtol``.

    Args:
        matrix (torch.Tensor): Symmetric matrices to invert.
            Shape: ``(..., dim, dim)``
        rtol (float | None): Tolerance on the reciprocal condition number.
            Default: ``dim * eps`` (See `default_rtol`)

    Returns:
        torch.Tensor: The inverse matrices. Singular items may hold garbage.
            Shape: ``(..., dim, dim)``
        torch.Tensor: Boolean tensor, True for singular items.
            Shape: ``(...)``
    """
    if rtol is None:
        rtol = default_rtol(matrix)

    result, info = torch.linalg.inv_ex(matrix)
    singular = (info != 0) | ~torch.isfinite(result).all(dim=-1).all(dim=-1)

    if rtol > 0:
        singular_values = torch.linalg.svdvals(matrix)
        singular = singular | (singular_values[..., -1] <= rtol * singular_values[..., 0])

    return result, singular


def inverse(
    matrix: torch.Tensor,
    *,
    step: int,
    name: str = "matrix",
    rtol: float | None = None,
    mask: torch.Tensor | None = None,
) -> torch.Tensor:
    """Invert a (batch of) symmetric matrices or raise :class:`SingularMatrixError`.

    See `inverse_ex` for the singularity criteria.

    Args:
        matrix (torch.Tensor): Symmetric matrices to invert.
            Shape: ``(..., dim, dim)``
        step (int): Time step, reported in the error.
        name (str): Name of the matrix, reported in the error.
        rtol (float | None): Tolerance on the reciprocal condition number.
            Default: ``dim * eps`` (See `default_rtol`)
        mask (torch.Tensor | None): Boolean tensor broadcastable to the batch shape ``(...)``.
            Only the items where ``mask`` is True are checked. The others may hold garbage.
            Default: every item is checked.

    Returns:
        torch.Tensor: The inverse matrices.
            Shape: ``(..., dim, dim)``
    """
    result, singular = inverse_ex(matrix, rtol=rtol)

    if mask is not None:
        singular = singular & mask

    if singular.any():
        raise SingularMatrixError(step, name)

    return result
