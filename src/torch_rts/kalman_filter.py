from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Optional, Union, overload

import torch

from .errors import DimensionError, SingularMatrixError
from .gaussian_state import GaussianState
from .linalg import identity_like, inverse, inverse_ex, symmetrize
from .model import LinearSystemModel, check_shapes
from .records import ForwardRecord, SmoothedRecord

logger = logging.getLogger(__name__)

Measures = Union[torch.Tensor, Sequence[Optional[torch.Tensor]]]

# Note on inverses:
# Innovation and predicted covariances are inverted explicitly (rather than solved with cholesky)
# as dim_x and dim_z are usually small. Each inverse is checked and a SingularMatrixError is raised
# instead of silently propagating inf/nan values.


class KalmanFilter:
    """Batch-friendly Kalman filter and Rauch-Tung-Striebel smoother in PyTorch.

    This class estimates the latent state of a linear dynamical system under Gaussian noise:

        x_k = F_k x_{k-1} + w_k,   w_k ~ N(0, Q_k)
        z_k = H_k x_k     + v_k,   v_k ~ N(0, R_k)

    where:
    - ``x_k`` is the hidden state (dimension ``dim_x``),
    - ``z_k`` is the measure (dimension ``dim_z``),
    - ``F_k``, ``Q_k``, ``H_k``, ``R_k`` are given for each step by a :class:`LinearSystemModel`.

    The forward pass (`filter`) estimates x_k | z_{1:k} ~ N(mu_k, P_k) and records both the prior
    (predicted) and posterior (filtered) states at each step. The backward pass (`rts_smooth`)
    uses these records to estimate x_k | z_{1:T}.

    Every method returns new states: recorded states are never modified.

    Shape conventions:
    - Vectors are **column vectors** with shape ``(..., dim, 1)``.
    - Matrices have shape ``(..., dim, dim)`` (or ``(..., dim_z, dim_x)`` for ``H``).
    - Leading ``...`` batch dimensions may be broadcastable, allowing to process independent
      sequences (or models) at once.

    Attributes:
        model (LinearSystemModel): Provider of F, Q, H, R for each step.
        joseph_update (bool): If True, use the Joseph form covariance update for improved numerical stability.
            This is typically ~50% slower than the standard update.
            Default: False
        singular_rtol (float | None): Tolerance on the reciprocal condition number under which
            a matrix is considered singular. See `torch_rts.linalg.inverse`.
            Default: None (``dim * eps``)
    """

    def __init__(
        self,
        model: LinearSystemModel,
        *,
        joseph_update=False,
        singular_rtol: float | None = None,
    ) -> None:
        if not isinstance(model, LinearSystemModel):
            raise TypeError(f"The model should implement transition_for and observation_for. Got {type(model)}")

        process_matrix, process_noise = model.transition_for(0)
        measurement_matrix, measurement_noise = model.observation_for(0)
        self._state_dim, self._measure_dim = check_shapes(
            process_matrix, measurement_matrix, process_noise, measurement_noise
        )
        self._dtype = process_matrix.dtype
        self._device = process_matrix.device

        self.model = model
        self.joseph_update = joseph_update
        self.singular_rtol = singular_rtol

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
        """Device of the Kalman filter."""
        return self._device

    @property
    def dtype(self) -> torch.dtype:
        """Dtype of the Kalman filter."""
        return self._dtype

    @overload
    def to(self, dtype: torch.dtype) -> KalmanFilter: ...

    @overload
    def to(self, device: torch.device) -> KalmanFilter: ...

    def to(self, fmt):
        """Convert a Kalman filter to a specific device or dtype.

        The model must support ``to`` (as :class:`~torch_rts.LinearModel` does).

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the filter to.

        Returns:
            KalmanFilter: The filter with the right format
        """
        if not hasattr(self.model, "to"):
            raise TypeError(f"{type(self.model).__name__} cannot be converted with `to`")

        return KalmanFilter(self.model.to(fmt), joseph_update=self.joseph_update, singular_rtol=self.singular_rtol)

    def predict(
        self,
        state: GaussianState,
        step=0,
        *,
        process_matrix: torch.Tensor | None = None,
        process_noise: torch.Tensor | None = None,
    ) -> GaussianState:
        """Compute the predicted (prior) state of ``step``.

        From a state x_{k-1} | ... ~ N(mu_{k-1}, P_{k-1}), it applies the process model:

            x_k = F x_{k-1} + w_k,   w_k ~ N(0, Q)

        leading to a prior state on the next timestep x_k | ... ~ N(mu_k, P_k) with:

            mu_k = F mu_{k-1}
            P_k = F P_{k-1} Fᵀ + Q

        The covariance is symmetrized. Prediction never fails, even from a singular covariance.

        Args:
            state (GaussianState): Current state estimation.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``
            step (int): Time step to predict. ``F`` and ``Q`` are ``model.transition_for(step)``.
                Default: 0
            process_matrix (torch.Tensor | None): Optional override for the process matrix ``F``.
                Shape: ``(..., dim_x, dim_x)``
            process_noise (torch.Tensor | None): Optional override for the process noise ``Q``.
                Shape: ``(..., dim_x, dim_x)``

        Returns:
            GaussianState: Predicted prior state.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``
        """
        if process_matrix is None or process_noise is None:
            default_matrix, default_noise = self.model.transition_for(step)
            process_matrix = default_matrix if process_matrix is None else process_matrix
            process_noise = default_noise if process_noise is None else process_noise

        mean = process_matrix @ state.mean
        covariance = symmetrize(process_matrix @ state.covariance @ process_matrix.mT + process_noise)

        return GaussianState(mean, covariance)

    def project(
        self,
        state: GaussianState,
        step=0,
        *,
        measurement_matrix: torch.Tensor | None = None,
        measurement_noise: torch.Tensor | None = None,
        mask: torch.Tensor | None = None,
    ) -> GaussianState:
        """Project a state into measurement space (usually the predicted state).

        From a state x_k | ... ~ N(mu_k, P_k), it applies the measurement model:

            z_k = H x_k + v_k,   v_k ~ N(0, R)

        leading to the innovation distribution z_k | ... ~ N(y_k, S_k) with:

            y_k = H mu_k
            S_k = H P_k Hᵀ + R

        ``S_k^{-1}`` is computed and stored in the precision of the returned state.

        Args:
            state (GaussianState): Current state estimation, typically the results of `predict`.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``
            step (int): Time step of the state. ``H`` and ``R`` are ``model.observation_for(step)``.
                Default: 0
            measurement_matrix (torch.Tensor | None): Optional override for the measurement matrix ``H``.
                Shape: ``(..., dim_z, dim_x)``
            measurement_noise (torch.Tensor | None): Optional override for the measurement noise ``R``.
                Shape: ``(..., dim_z, dim_z)``
            mask (torch.Tensor | None): Items of the batch for which ``S_k`` must be invertible.
                Shape: broadcastable to ``(...)``
                Default: all items.

        Returns:
            GaussianState: Projected state in the measurement space.
                Shape (mean): ``(..., dim_z, 1)``
                Shape (covariance): ``(..., dim_z, dim_z)``

        Raises:
            SingularMatrixError: If ``S_k`` cannot be inverted.
        """
        measurement_matrix, measurement_noise = self._observation(step, measurement_matrix, measurement_noise)

        mean, covariance = self._innovation(state, measurement_matrix, measurement_noise)
        precision = inverse(
            covariance, step=step, name="innovation covariance", rtol=self.singular_rtol, mask=mask
        )

        return GaussianState(mean, covariance, precision)

    def update(
        self,
        state: GaussianState,
        measure: torch.Tensor | None,
        step=0,
        *,
        projection: GaussianState | None = None,
        measurement_matrix: torch.Tensor | None = None,
        measurement_noise: torch.Tensor | None = None,
    ) -> GaussianState:
        """Update a state estimate using a new measure.

        Given a state x_k | ... ~ N(mu_k, P_k) and a new observation z_k. It
        computes the posterior state x_k | ..., z_k ~ N(mu'_k, P'_k), accounting
        for the new measure z_k.

        `update` follows three main steps:
        1. Computing the measure expected distribution z_k | ... ~ N(y_k, S_k) with `project`.
        2. Kalman gain computation: K = P_k Hᵀ S_k^{-1}
        3. Incorporate z_k information in the state:
            mu'_k = mu_k + K (z_k - y_k)
            P'_k = (I - K H) P_k   OR [JOSEPH_UPDATE] P'_k = (I - K H) P_k (I - K H)ᵀ + K R Kᵀ

        The posterior covariance is symmetrized.

        Missing measures:
            If ``measure`` is None, the state is returned unchanged. If some items of a batched
            measure contain NaN, the corresponding states are kept unchanged.

        Args:
            state (GaussianState): Current state estimation, typically the results of `predict`.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``
            measure (torch.Tensor | None): Measure of the state `z_k` (column vector).
                Shape: ``(..., dim_z, 1)``
            step (int): Time step of the state. ``H`` and ``R`` are ``model.observation_for(step)``.
                Default: 0
            projection (GaussianState | None): Optional precomputed projection from `project`.
            measurement_matrix (torch.Tensor | None): Optional override for the measurement matrix ``H``.
                Shape: ``(..., dim_z, dim_x)``
            measurement_noise (torch.Tensor | None): Optional override for the measurement noise ``R``.
                Shape: ``(..., dim_z, dim_z)``

        Returns:
            GaussianState: Updated posterior state.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``

        Raises:
            SingularMatrixError: If the innovation covariance ``S_k`` cannot be inverted.
            ValueError: If ``projection`` has no precision.
        """
        if measure is None:
            return state

        missing = _missing(measure)
        if missing.all():
            return state

        measurement_matrix, measurement_noise = self._observation(step, measurement_matrix, measurement_noise)
        if projection is None:
            projection = self.project(
                state,
                step,
                measurement_matrix=measurement_matrix,
                measurement_noise=measurement_noise,
                mask=~missing,
            )
        if projection.precision is None:
            raise ValueError("The projection should hold the innovation precision (See `project`)")

        residual = measure.masked_fill(missing[..., None, None], 0.0) - projection.mean
        kalman_gain = state.covariance @ measurement_matrix.mT @ projection.precision

        mean = state.mean + kalman_gain @ residual

        if self.joseph_update:
            factor = identity_like(state.covariance) - kalman_gain @ measurement_matrix
            covariance = factor @ state.covariance @ factor.mT + kalman_gain @ measurement_noise @ kalman_gain.mT
        else:
            covariance = state.covariance - kalman_gain @ measurement_matrix @ state.covariance

        covariance = symmetrize(covariance)

        if missing.any():  # Keep the prior where the measure is missing
            mean = torch.where(missing[..., None, None], state.mean, mean)
            covariance = torch.where(missing[..., None, None], state.covariance, covariance)

        return GaussianState(mean, covariance)

    def step(
        self,
        state: GaussianState,
        measure: torch.Tensor | None,
        step=0,
        *,
        predict=True,
        skip_singular=False,
    ) -> ForwardRecord:
        """Run one predict/update cycle and record its intermediate results.

        Args:
            state (GaussianState): Posterior state of the previous step (or the initial prior).
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``
            measure (torch.Tensor | None): Measure of this step, None (or NaN) if missing.
                Shape: ``(..., dim_z, 1)``
            step (int): Time step index.
                Default: 0
            predict (bool): If False, ``state`` is directly used as the prior of this step.
                Default: True
            skip_singular (bool): If True, items of the batch with a singular innovation covariance are handled
                as missing measures (the predicted state is used as filtered) instead of raising.
                Default: False

        Returns:
            ForwardRecord: Predicted and filtered states of the step.

        Raises:
            SingularMatrixError: If the innovation covariance is singular (and ``skip_singular`` is False).
        """
        predicted = self.predict(state, step) if predict else state

        if measure is None:
            missing = torch.ones(predicted.mean.shape[:-2], dtype=torch.bool, device=predicted.mean.device)
            return self._skipped(step, predicted, missing)

        missing = _missing(measure)
        if missing.all():
            return self._skipped(step, predicted, missing)

        if skip_singular:
            measurement_matrix, measurement_noise = self.model.observation_for(step)
            mean, covariance = self._innovation(predicted, measurement_matrix, measurement_noise)
            precision, singular = inverse_ex(covariance, rtol=self.singular_rtol)
            singular = singular & ~missing
            if singular.any():
                logger.warning(
                    "Singular innovation covariance at step %d: the update is skipped for %d item(s)",
                    step,
                    int(singular.sum()),
                )
                # Singular items are handled as missing measures
                measure = torch.where(singular[..., None, None], torch.nan, measure)
                missing = missing | singular
                if missing.all():
                    return self._skipped(step, predicted, missing)
            projection = GaussianState(mean, covariance, precision)
        else:
            projection = self.project(predicted, step, mask=~missing)

        filtered = self.update(predicted, measure, step, projection=projection)
        log_likelihood = projection.log_likelihood(measure.masked_fill(missing[..., None, None], 0.0))

        return ForwardRecord(step, predicted, filtered, ~missing, log_likelihood.masked_fill(missing, 0.0))

    def filter(
        self, state: GaussianState, measures: Measures, *, update_first=False, skip_singular=False
    ) -> list[ForwardRecord]:
        """Run the predict/update loop over a sequence of measures (forward pass).

        Step ``t`` (from 0 to T-1) predicts with ``model.transition_for(t)`` and updates with
        ``model.observation_for(t)``. A measure may be missing: None, or containing NaN (see `update`).

        The first singular innovation covariance stops the run and the error is propagated: no partial
        result is returned. With ``skip_singular=True``, the items of the batch
        with a singular innovation covariance are handled as missing measures instead.

        Args:
            state (GaussianState): Initial prior on the state, before seeing any of the measures.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``
            measures (torch.Tensor | Sequence[torch.Tensor | None]): Sequence of measures over time.
                Shape: ``(T, ..., dim_z, 1)``
            update_first (bool): If True, skip the prediction step on the first timestep, such that the initial
                state corresponds to the prior at t=0.
                Default: False
            skip_singular (bool): Skip updates with a singular innovation covariance rather than failing.
                Default: False

        Returns:
            list[ForwardRecord]: One record per step, holding the predicted and filtered states.

        Raises:
            DimensionError: If the initial state or a measure does not match the model dimensions.
            SingularMatrixError: On the first singular innovation covariance (unless ``skip_singular``).
        """
        state = state.to(self.dtype).to(self.device)
        self._check_state(state)
        self._check_measures(measures)

        logger.debug(
            "Forward pass over %d steps (State dimension: %d, Measure dimension: %d)",
            len(measures),
            self.state_dim,
            self.measure_dim,
        )

        records: list[ForwardRecord] = []
        for t, measure in enumerate(measures):
            if measure is not None:
                # Convert on the fly the measure to avoid to store them all in cuda memory
                measure = measure.to(self.dtype).to(self.device, non_blocking=True)  # noqa: PLW2901

            record = self.step(
                state, measure, t, predict=bool(t or not update_first), skip_singular=skip_singular
            )
            records.append(record)
            state = record.filtered

        return records

    def rts_smooth(self, records: Sequence[ForwardRecord]) -> list[SmoothedRecord]:
        """Apply Rauch-Tung-Striebel (RTS) smoothing to the records of a forward pass.

        The last smoothed state is the last filtered state. Then, going backward, for k = T-2 to 0:

            C_k = P_k Fᵀ P_pred_{k+1}^{-1}
            mu_s_k = mu_k + C_k (mu_s_{k+1} - mu_pred_{k+1})
            P_s_k = P_k + C_k (P_s_{k+1} - P_pred_{k+1}) C_kᵀ

        where ``(mu_k, P_k)`` is the filtered state of step k, ``(mu_pred_{k+1}, P_pred_{k+1})`` the recorded
        predicted state of step k+1, and F = ``model.transition_for(k+1)``.

        Args:
            records (Sequence[ForwardRecord]): Records of `filter`, ordered in time.

        Returns:
            list[SmoothedRecord]: One record per step, ordered in time.

        Raises:
            SingularMatrixError: If a predicted covariance cannot be inverted. This aborts the whole
                backward pass as earlier steps depend on it.
        """
        if not records:
            raise ValueError("Cannot smooth an empty sequence of records")

        logger.debug("Backward pass over %d steps", len(records))

        last = records[-1]
        smoothed = [SmoothedRecord(last.step, last.filtered, None)]
        next_state = last.filtered

        # Iterate backward to smooth all states (except the last one which is already fine)
        for t in range(len(records) - 2, -1, -1):
            filtered = records[t].filtered
            predicted = records[t + 1].predicted
            process_matrix, _ = self.model.transition_for(records[t + 1].step)

            precision = inverse(
                predicted.covariance, step=records[t].step, name="predicted covariance", rtol=self.singular_rtol
            )
            gain = filtered.covariance @ process_matrix.mT @ precision

            mean = filtered.mean + gain @ (next_state.mean - predicted.mean)
            covariance = symmetrize(
                filtered.covariance + gain @ (next_state.covariance - predicted.covariance) @ gain.mT
            )

            next_state = GaussianState(mean, covariance)
            smoothed.append(SmoothedRecord(records[t].step, next_state, gain))

        smoothed.reverse()
        return smoothed

    def smooth(
        self, state: GaussianState, measures: Measures, *, update_first=False, skip_singular=False
    ) -> list[SmoothedRecord]:
        """Filter then smooth a sequence of measures. See `filter` and `rts_smooth`."""
        records = self.filter(state, measures, update_first=update_first, skip_singular=skip_singular)
        return self.rts_smooth(records)

    def _observation(
        self, step: int, measurement_matrix: torch.Tensor | None, measurement_noise: torch.Tensor | None
    ) -> tuple[torch.Tensor, torch.Tensor]:
        if measurement_matrix is None or measurement_noise is None:
            default_matrix, default_noise = self.model.observation_for(step)
            measurement_matrix = default_matrix if measurement_matrix is None else measurement_matrix
            measurement_noise = default_noise if measurement_noise is None else measurement_noise
        return measurement_matrix, measurement_noise

    def _innovation(
        self, state: GaussianState, measurement_matrix: torch.Tensor, measurement_noise: torch.Tensor
    ) -> tuple[torch.Tensor, torch.Tensor]:
        mean = measurement_matrix @ state.mean
        covariance = symmetrize(measurement_matrix @ state.covariance @ measurement_matrix.mT + measurement_noise)
        return mean, covariance

    def _skipped(self, step: int, predicted: GaussianState, missing: torch.Tensor) -> ForwardRecord:
        zeros = torch.zeros(missing.shape, dtype=predicted.mean.dtype, device=predicted.mean.device)
        return ForwardRecord(step, predicted, predicted, ~missing, zeros)

    def _check_state(self, state: GaussianState) -> None:
        if state.mean.shape[-2:] != (self.state_dim, 1):
            raise DimensionError(
                f"The state mean should have shape (..., {self.state_dim}, 1). Got {tuple(state.mean.shape)}"
            )
        if state.covariance.shape[-2:] != (self.state_dim, self.state_dim):
            raise DimensionError(
                f"The state covariance should have shape (..., {self.state_dim}, {self.state_dim})."
                f" Got {tuple(state.covariance.shape)}"
            )

    def _check_measures(self, measures: Measures) -> None:
        for t, measure in enumerate(measures):
            if measure is not None and measure.shape[-2:] != (self.measure_dim, 1):
                raise DimensionError(
                    f"Measures should have shape (..., {self.measure_dim}, 1). Got {tuple(measure.shape)} at step {t}"
                )

    def __repr__(self) -> str:
        """Convert the Kalman filter into a readable string."""
        header = f"Kalman Filter (State dimension: {self.state_dim}, Measure dimension: {self.measure_dim})"
        return f"{header}\n{self.model!r}"


def _missing(measure: torch.Tensor) -> torch.Tensor:
    """Items of the batch whose measure contains NaN. Shape: ``(...)``"""
    return torch.isnan(measure).any(dim=-1).any(dim=-1)
