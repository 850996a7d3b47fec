"""Exceptions raised by torch-rts."""

from __future__ import annotations


class TorchRtsError(Exception):
    """Base class of all torch-rts errors."""


class SingularMatrixError(TorchRtsError):
    """A matrix that must be inverted is singular (or too ill-conditioned).

    It is raised by the update step (innovation covariance) and by the RTS smoother
    (predicted covariance). Nothing is retried: the caller decides whether to skip the step,
    inflate the noises or abort.

    Attributes:
        step (int): Time step at which the inversion failed.
        name (str): Name of the matrix that could not be inverted.
    """

    def __init__(self, step: int, name: str = "matrix") -> None:
        super().__init__(f"Singular {name} at step {step}")
        self.step = step
        self.name = name


class DimensionError(TorchRtsError, ValueError):
    """Shapes of the matrices/vectors are not consistent with the state and measure dimensions."""
