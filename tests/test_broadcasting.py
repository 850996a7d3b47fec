import torch

from torch_rts import GaussianState, KalmanFilter, LinearModel


def _spd_matrix(dim: int, batch: tuple[int, ...] = ()) -> torch.Tensor:
    # Construct a symmetric positive definite covariance.
    cov = torch.randn(*batch, dim, dim)
    return cov @ cov.mT + 1e-2 * torch.eye(dim)


def random_model(dim_x: int, dim_z: int, batch: tuple[int, ...] = ()) -> LinearModel:
    return LinearModel(
        torch.eye(dim_x) + 0.3 * torch.randn(*batch, dim_x, dim_x),
        torch.randn(*batch, dim_z, dim_x),
        _spd_matrix(dim_x, batch),
        _spd_matrix(dim_z, batch),
    )


def single_kf(model: LinearModel, idx) -> KalmanFilter:
    return KalmanFilter(
        LinearModel(
            model.process_matrix[idx],
            model.measurement_matrix[idx],
            model.process_noise[idx],
            model.measurement_noise[idx],
        )
    )


def test_predict_broadcasts_over_models_and_states():
    models, batch = 4, 5
    dim_x, dim_z = 3, 2

    model = random_model(dim_x, dim_z, batch=(models, 1))  # Same models for everyone in the batch
    kf = KalmanFilter(model)
    s = GaussianState(torch.randn(batch, dim_x, 1), _spd_matrix(dim_x, batch=(batch,)))

    out = kf.predict(s)
    assert out.mean.shape == (models, batch, dim_x, 1)
    assert out.covariance.shape == (models, batch, dim_x, dim_x)

    for m in range(models):
        for b in range(batch):
            ref = kf.predict(s[b], process_matrix=model.process_matrix[m, 0], process_noise=model.process_noise[m, 0])
            assert torch.allclose(ref.mean, out.mean[m, b])
            assert torch.allclose(ref.covariance, out.covariance[m, b])


def test_project_broadcasts_over_models_and_states():
    models, batch = 2, 3
    dim_x, dim_z = 4, 1

    model = random_model(dim_x, dim_z, batch=(models, 1))
    kf = KalmanFilter(model)
    s = GaussianState(torch.randn(batch, dim_x, 1), _spd_matrix(dim_x, batch=(batch,)))

    out = kf.project(s)
    assert out.mean.shape == (models, batch, dim_z, 1)
    assert out.covariance.shape == (models, batch, dim_z, dim_z)
    assert out.precision is not None
    assert out.precision.shape == (models, batch, dim_z, dim_z)

    for m in range(models):
        for b in range(batch):
            ref = kf.project(
                s[b],
                measurement_matrix=model.measurement_matrix[m, 0],
                measurement_noise=model.measurement_noise[m, 0],
            )
            assert torch.allclose(ref.mean, out.mean[m, b])
            assert torch.allclose(ref.covariance, out.covariance[m, b])
            assert ref.precision is not None
            assert torch.allclose(ref.precision, out.precision[m, b])


def test_update_broadcasts_over_models_states_and_measures():
    models, batch = 5, 4
    dim_x, dim_z = 3, 2

    model = random_model(dim_x, dim_z, batch=(models, 1))
    kf = KalmanFilter(model)
    s = GaussianState(torch.randn(batch, dim_x, 1), _spd_matrix(dim_x, batch=(batch,)))
    measure = torch.randn(batch, dim_z, 1)

    # Assuming measures are not aligned, one could try to update each state with each model and each measure:
    out = kf.update(s, measure[:, None, None])

    assert out.mean.shape == (batch, models, batch, dim_x, 1)
    assert out.covariance.shape == (models, batch, dim_x, dim_x)  # Not been expanded but still compatible

    for i in range(batch):
        for m in range(models):
            for b in range(batch):
                ref = kf.update(
                    s[b],
                    measure[i],
                    measurement_matrix=model.measurement_matrix[m, 0],
                    measurement_noise=model.measurement_noise[m, 0],
                )
                assert torch.allclose(ref.mean, out.mean[i, m, b])
                assert torch.allclose(ref.covariance, out.covariance[m, b])


def test_filter_and_smooth_broadcast_over_models_and_states():
    models, batch, length = 5, 4, 10
    dim_x, dim_z = 2, 2

    model = random_model(dim_x, dim_z, batch=(models, 1))
    kf = KalmanFilter(model)
    s = GaussianState(torch.randn(batch, dim_x, 1), _spd_matrix(dim_x, batch=(batch,)))
    measures = torch.randn(length, batch, dim_z, 1)
    measures[3, 1] = torch.nan

    records = kf.filter(s, measures)
    smoothed = kf.rts_smooth(records)

    assert records[-1].filtered.mean.shape == (models, batch, dim_x, 1)
    assert records[-1].filtered.covariance.shape == (models, batch, dim_x, dim_x)
    assert records[-1].log_likelihood.shape == (models, batch)
    assert smoothed[0].smoothed.mean.shape == (models, batch, dim_x, 1)
    assert smoothed[0].smoothed.covariance.shape == (models, batch, dim_x, dim_x)

    for m in range(models):
        for b in range(batch):
            kf_mb = single_kf(model, (m, 0))
            ref = kf_mb.filter(s[b], measures[:, b])
            ref_smoothed = kf_mb.rts_smooth(ref)

            for t in range(length):
                assert torch.allclose(ref[t].filtered.mean, records[t].filtered.mean[m, b])
                assert torch.allclose(ref[t].filtered.covariance, records[t].filtered.covariance[m, b])
                assert torch.allclose(ref[t].log_likelihood, records[t].log_likelihood[m, b])
                assert torch.allclose(ref_smoothed[t].smoothed.mean, smoothed[t].smoothed.mean[m, b])
                assert torch.allclose(ref_smoothed[t].smoothed.covariance, smoothed[t].smoothed.covariance[m, b])
