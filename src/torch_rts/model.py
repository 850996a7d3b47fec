"""Linear Gaussian system models.

A model supplies, for each time step, the matrices of

    x_k = F_k x_{k-1} + w_k,   w_k ~ N(0, Q_k)
    z_k = H_k x_k     + v_k,   v_k ~ N(0, R_k)

Any object implementing :class:`LinearSystemModel` can drive a :class:`~torch_rts.KalmanFilter`.
Two implementations are provided: :class:`LinearModel` (time-invariant) and
:class:`TimeVaryingLinearModel` (one set of matrices per step).
"""

from __future__ import annotations

import contextlib
import copy
from collections.abc import Sequence
from typing import Protocol, Union, overload, runtime_checkable

import torch

from .errors import DimensionError

MatrixSequence = Union[torch.Tensor, Sequence[torch.Tensor]]

# Two matrices wider than this are printed one above the other
_REPR_SPLIT_LENGTH = 110


if hasattr(torch._tensor_str, "printoptions"):  # noqa: SLF001
    printoptions = torch._tensor_str.printoptions  # noqa: SLF001
else:

    @contextlib.contextmanager
    def printoptions(**kwargs):
        """Change pytorch printoptions temporarily."""
        old_printoptions = copy.copy(torch._tensor_str.PRINT_OPTS)  # noqa: SLF001
        torch.set_printoptions(**kwargs)
        try:
            yield
        finally:
            torch._tensor_str.PRINT_OPTS = old_printoptions  # noqa: SLF001


@runtime_checkable
class LinearSystemModel(Protocol):
    """Provider of the system matrices for a given time step.

    Implementations must not have side effects: the smoother calls ``transition_for``
    again on steps already visited by the filter.
    """

    def transition_for(self, step: int) -> tuple[torch.Tensor, torch.Tensor]:
        """Return the process matrix ``F`` and process noise ``Q`` used to reach ``step``."""
        ...

    def observation_for(self, step: int) -> tuple[torch.Tensor, torch.Tensor]:
        """Return the measurement matrix ``H`` and measurement noise ``R`` of ``step``."""
        ...


def check_shapes(
    process_matrix: torch.Tensor,
    measurement_matrix: torch.Tensor,
    process_noise: torch.Tensor,
    measurement_noise: torch.Tensor,
    step: int | None = None,
) -> tuple[int, int]:
    """Check that F, H, Q, R agree on the state and measure dimensions.

    Only the last two dimensions are checked (batch dimensions should broadcast).

    Returns:
        tuple[int, int]: ``(state_dim, measure_dim)``
    """
    where = "" if step is None else f" (step {step})"

    named = (("F", process_matrix), ("H", measurement_matrix), ("Q", process_noise), ("R", measurement_noise))
    for name, tensor in named:
        if tensor.ndim < 2:  # noqa: PLR2004
            raise DimensionError(f"{name} must be a matrix, got shape {tuple(tensor.shape)}{where}")

    state_dim = process_matrix.shape[-1]
    measure_dim = measurement_matrix.shape[-2]

    if process_matrix.shape[-2:] != (state_dim, state_dim):
        raise DimensionError(f"F must be square, got shape {tuple(process_matrix.shape)}{where}")
    if process_noise.shape[-2:] != (state_dim, state_dim):
        raise DimensionError(
            f"Q must have shape (..., {state_dim}, {state_dim}), got {tuple(process_noise.shape)}{where}"
        )
    if measurement_matrix.shape[-1] != state_dim:
        raise DimensionError(
            f"H must have shape (..., {measure_dim}, {state_dim}), got {tuple(measurement_matrix.shape)}{where}"
        )
    if measurement_noise.shape[-2:] != (measure_dim, measure_dim):
        raise DimensionError(
            f"R must have shape (..., {measure_dim}, {measure_dim}), got {tuple(measurement_noise.shape)}{where}"
        )

    return state_dim, measure_dim


class LinearModel:
    """Time-invariant linear Gaussian model.

    Attributes:
        process_matrix (torch.Tensor): Process/Transition matrix ``F``.
            Shape: ``(..., dim_x, dim_x)``
        measurement_matrix (torch.Tensor): Projection/Measurement matrix ``H``.
            Shape: ``(..., dim_z, dim_x)``
        process_noise (torch.Tensor): Process noise covariance ``Q``.
            Shape: ``(..., dim_x, dim_x)``
        measurement_noise (torch.Tensor): Measurement noise covariance ``R``.
            Shape: ``(..., dim_z, dim_z)``
    """

    def __init__(
        self,
        process_matrix: torch.Tensor,
        measurement_matrix: torch.Tensor,
        process_noise: torch.Tensor,
        measurement_noise: torch.Tensor,
    ) -> None:
        self._state_dim, self._measure_dim = check_shapes(
            process_matrix, measurement_matrix, process_noise, measurement_noise
        )
        self.process_matrix = process_matrix
        self.measurement_matrix = measurement_matrix
        self.process_noise = process_noise
        self.measurement_noise = measurement_noise

    @property
    def state_dim(self) -> int:
        """Dimension of the state variable."""
        return self._state_dim

    @property
    def measure_dim(self) -> int:
        """Dimension of the measured variable."""
        return self._measure_dim

    @property
    def device(self) -> torch.device:
        return self.process_matrix.device

    @property
    def dtype(self) -> torch.dtype:
        return self.process_matrix.dtype

    def transition_for(self, step: int) -> tuple[torch.Tensor, torch.Tensor]:  # noqa: ARG002
        return self.process_matrix, self.process_noise

    def observation_for(self, step: int) -> tuple[torch.Tensor, torch.Tensor]:  # noqa: ARG002
        return self.measurement_matrix, self.measurement_noise

    @overload
    def to(self, dtype: torch.dtype) -> LinearModel: ...

    @overload
    def to(self, device: torch.device) -> LinearModel: ...

    def to(self, fmt):
        """Convert the model to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the model to.

        Returns:
            LinearModel: A new model with the right format
        """
        return LinearModel(
            self.process_matrix.to(fmt),
            self.measurement_matrix.to(fmt),
            self.process_noise.to(fmt),
            self.measurement_noise.to(fmt),
        )

    def __repr__(self) -> str:
        """Convert the model into a readable string."""
        header = f"Linear Model (State dimension: {self.state_dim}, Measure dimension: {self.measure_dim})"
        process = _format_pair("Process", ("F", self.process_matrix), ("Q", self.process_noise), 80)
        measurement = _format_pair(
            "Measurement", ("H", self.measurement_matrix), ("R", self.measurement_noise), 100
        )
        n_char = max(len(line) for line in (process + "\n" + measurement).split("\n"))
        return ("\n" + "-" * n_char + "\n").join([header, process, measurement])


def _format_pair(
    title: str, first: tuple[str, torch.Tensor], second: tuple[str, torch.Tensor], linewidth: int
) -> str:
    """Print two named matrices side by side, or one above the other when too wide."""
    with printoptions(profile="short", sci_mode=False, linewidth=linewidth):
        first_lines = str(first[1]).split("\n")
        second_lines = str(second[1]).split("\n")

    first_head = f"{title}: {first[0]} = "
    first_width = max(len(line) for line in first_lines)
    second_width = max(len(line) for line in second_lines)

    if first_width + second_width <= _REPR_SPLIT_LENGTH:
        separator = f"  &  {second[0]} = "
        return "\n".join(
            (first_head if i == 0 else " " * len(first_head))
            + line.ljust(first_width)
            + (separator if i == 0 else " " * len(separator))
            + other
            for i, (line, other) in enumerate(zip(first_lines, second_lines))
        )

    second_head = " " * (len(title) + 2) + f"{second[0]} = "
    lines = [(first_head if i == 0 else " " * len(first_head)) + line for i, line in enumerate(first_lines)]
    lines.append("")
    lines.extend((second_head if i == 0 else " " * len(second_head)) + line for i, line in enumerate(second_lines))
    return "\n".join(lines)


class TimeVaryingLinearModel:
    """Linear Gaussian model whose matrices change with the time step.

    Each argument is either a sequence of matrices indexed by step (a list, or a tensor
    whose first dimension is time) or a single matrix shared by all steps. A 2D tensor is always
    a constant matrix. A batched constant matrix (``(..., dim, dim)`` with batch dimensions) must be
    declared with ``constant=...`` to be distinguished from a time sequence.
    The dimensions ``dim_x`` and ``dim_z`` must be the same at every step: they are all
    checked at construction.

    Example:
    ```python
        # Process depends on the time elapsed between two frames, measurement is constant
        dts = [0.5, 1.0, 0.2]
        model = TimeVaryingLinearModel(
            [torch.tensor([[1.0, dt], [0.0, 1.0]]) for dt in dts],
            torch.tensor([[1.0, 0.0]]),
            [torch.eye(2) * dt for dt in dts],
            torch.eye(1),
        )
    ```

    Attributes:
        length (int | None): Number of steps described by the model (None if every matrix is constant).
    """

    _FIELDS = ("process_matrix", "measurement_matrix", "process_noise", "measurement_noise")

    def __init__(
        self,
        process_matrices: MatrixSequence,
        measurement_matrices: MatrixSequence,
        process_noises: MatrixSequence,
        measurement_noises: MatrixSequence,
        *,
        constant: Sequence[str] = (),
    ) -> None:
        unknown = set(constant) - set(self._FIELDS)
        if unknown:
            raise ValueError(f"Unknown constant fields: {sorted(unknown)}. Expected some of {self._FIELDS}")

        self._sequences: dict[str, MatrixSequence] = {}
        self._constants: dict[str, torch.Tensor] = {}
        for name, value in zip(
            self._FIELDS, (process_matrices, measurement_matrices, process_noises, measurement_noises)
        ):
            if name in constant or (isinstance(value, torch.Tensor) and value.ndim == 2):  # noqa: PLR2004
                if not isinstance(value, torch.Tensor):
                    raise DimensionError(f"Constant {name} must be a single tensor")
                self._constants[name] = value
            else:
                self._sequences[name] = value

        lengths = {len(values) for values in self._sequences.values()}
        if len(lengths) > 1:
            raise DimensionError(f"All time-varying matrices should have the same length. Found {sorted(lengths)}")
        self.length = lengths.pop() if lengths else None

        dims = {check_shapes(*self._matrices(step), step=step) for step in range(self.length or 1)}
        if len(dims) > 1:
            raise DimensionError(f"State and measure dimensions vary in time: {sorted(dims)}")
        self._state_dim, self._measure_dim = dims.pop()

    @property
    def state_dim(self) -> int:
        """Dimension of the state variable."""
        return self._state_dim

    @property
    def measure_dim(self) -> int:
        """Dimension of the measured variable."""
        return self._measure_dim

    def _get(self, name: str, step: int) -> torch.Tensor:
        if name in self._constants:
            return self._constants[name]
        if not 0 <= step < (self.length or 0):
            raise IndexError(f"Step {step} is out of the model range [0, {self.length})")
        return self._sequences[name][step]

    def _matrices(self, step: int) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor, torch.Tensor]:
        return tuple(self._get(name, step) for name in self._FIELDS)  # type: ignore[return-value]

    def transition_for(self, step: int) -> tuple[torch.Tensor, torch.Tensor]:
        return self._get("process_matrix", step), self._get("process_noise", step)

    def observation_for(self, step: int) -> tuple[torch.Tensor, torch.Tensor]:
        return self._get("measurement_matrix", step), self._get("measurement_noise", step)

    def __len__(self) -> int:
        if self.length is None:
            raise TypeError("A model without time-varying matrices has no length")
        return self.length

    def __repr__(self) -> str:
        varying = ", ".join(name for name in self._FIELDS if name in self._sequences) or "none"
        return (
            f"Time-Varying Linear Model (State dimension: {self.state_dim}, Measure dimension: {self.measure_dim},"
            f" Steps: {self.length}, Varying: {varying})"
        )
