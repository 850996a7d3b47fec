import pytest
import torch

from torch_rts import GaussianState, KalmanFilter
from torch_rts.ckf import constant_kalman_filter, constant_model, interleave, process_matrix, process_noise


def test_interleave_matches_expected():
    x = torch.tensor([[1, 1], [2, 2], [3, 3], [4, 4], [5, 5], [6, 6], [7, 7], [8, 8], [9, 9]])
    expected = torch.tensor([[1, 1], [4, 4], [7, 7], [2, 2], [5, 5], [8, 8], [3, 3], [6, 6], [9, 9]])
    assert torch.equal(interleave(x, 3), expected)


def test_process_matrix_order1_dt1():
    assert torch.allclose(process_matrix(order=1, dt=1.0), torch.tensor([[1.0, 1.0], [0.0, 1.0]]))


def test_process_matrix_order2_dt05():
    expected = torch.tensor(
        [
            [1.0, 0.5, 0.125],
            [0.0, 1.0, 0.5],
            [0.0, 0.0, 1.0],
        ]
    )
    assert torch.allclose(process_matrix(order=2, dt=0.5), expected)


def test_process_matrix_approximate_drops_higher_terms():
    expected = torch.tensor(
        [
            [1.0, 0.5, 0.0],
            [0.0, 1.0, 0.5],
            [0.0, 0.0, 1.0],
        ]
    )
    assert torch.allclose(process_matrix(order=2, dt=0.5, approximate=True), expected)


def test_process_noise_order_3():
    noise = process_noise(1.5, order=3, dt=1.0)

    expected = torch.tensor(
        [
            [0.0625, 0.1875, 0.3750, 0.3750],
            [0.1875, 0.5625, 1.1250, 1.1250],
            [0.3750, 1.1250, 2.2500, 2.2500],
            [0.3750, 1.1250, 2.2500, 2.2500],
        ]
    )
    assert torch.allclose(noise, expected)
    assert torch.allclose(noise, noise.mT)
    assert (torch.linalg.eigvalsh(noise) > -1e-6).all()


def test_process_noise_expected_model():
    noise = process_noise(1.0, order=5, dt=0.5)
    noise_expected = process_noise(1.0, order=5, dt=0.5, expected_model=True)

    # The expected model has an offset of 1 in the resulting noises
    assert torch.allclose(noise[:-1, :-1], noise_expected[1:, 1:])


@pytest.mark.parametrize(
    ("std", "order", "dt", "expected"),
    [
        (1.0, 3, 1.0, False),
        (1.0, 3, 0.5, True),
        (5.0, 2, 0.5, True),
        (0.2, 0, 2.0, False),
    ],
)
def test_process_noise_approximate(std: float, order: int, dt: float, expected: bool):
    noise = process_noise(std, order, dt, expected_model=expected, approximate=True)
    assert noise[-1, -1].item() == pytest.approx(std**2 * (dt**2 if expected else 1))

    noise[-1, -1] = 0
    assert (noise == 0).all()


def test_constant_model_default_ordering():
    model = constant_model(3.0, 1.5, dim=2, order=1)

    # state_dim = (order+1)*dim = 4, measure_dim = dim = 2
    assert model.state_dim == 4
    assert model.measure_dim == 2
    assert torch.allclose(model.measurement_noise, torch.eye(2) * 9.0)
    assert (
        model.measurement_matrix
        == torch.tensor(
            [
                # x, y, dx, dy
                [1, 0, 0, 0],
                [0, 1, 0, 0],
            ]
        )
    ).all()
    assert (
        model.process_matrix
        == torch.tensor(
            [
                [1, 0, 1, 0],
                [0, 1, 0, 1],
                [0, 0, 1, 0],
                [0, 0, 0, 1],
            ]
        )
    ).all()


def test_constant_model_order_by_dim():
    model = constant_model(3.0, 1.5, dim=3, order=2, order_by_dim=False)
    model_by_dim = constant_model(3.0, 1.5, dim=3, order=2, order_by_dim=True)

    assert model.process_matrix.shape == model_by_dim.process_matrix.shape
    assert not torch.allclose(model.process_matrix, model_by_dim.process_matrix)
    assert torch.allclose(model_by_dim.process_matrix[:3, :3], process_matrix(2))
    assert (
        model_by_dim.measurement_matrix
        == torch.tensor(
            [
                # x,dx,ddx,y,dy,ddy,z,dz,ddz
                [1, 0, 0, 0, 0, 0, 0, 0, 0],
                [0, 0, 0, 1, 0, 0, 0, 0, 0],
                [0, 0, 0, 0, 0, 0, 1, 0, 0],
            ]
        )
    ).all()


def test_constant_kalman_filter_tracks_a_line():
    kf = constant_kalman_filter(0.1, 0.01, dim=1, order=1, joseph_update=True)
    assert isinstance(kf, KalmanFilter)
    assert kf.joseph_update

    positions = torch.arange(1, 21, dtype=torch.get_default_dtype()) * 0.5
    measures = (positions + 0.1 * torch.randn(20)).reshape(20, 1, 1)

    smoothed = kf.smooth(GaussianState(torch.zeros(2, 1), torch.eye(2) * 100), measures)

    # Velocity is recovered by the smoother
    assert smoothed[10].smoothed.mean[1, 0].item() == pytest.approx(0.5, abs=0.05)
