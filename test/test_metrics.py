import math

import pytest
import torch

from deepflux.utils import KGELoss, LogNSELoss, NSELoss

OBS = torch.tensor([1.0, 3.0, 2.0, 5.0, 4.0], dtype=torch.float64)


class TestNSELoss:
    def test_perfect_fit(self) -> None:
        assert float(NSELoss()(OBS, OBS)) == pytest.approx(0.0)

    def test_mean_prediction_scores_one(self) -> None:
        pred = torch.full_like(OBS, float(OBS.mean()))

        assert float(NSELoss(eps=0.0)(pred, OBS)) == pytest.approx(1.0)

    def test_nan_observations_are_ignored(self) -> None:
        pred = OBS + 0.5
        gappy = OBS.clone()
        gappy[2] = float("nan")
        keep = torch.tensor([True, True, False, True, True])

        torch.testing.assert_close(NSELoss()(pred, gappy), NSELoss()(pred[keep], OBS[keep]))


class TestLogNSELoss:
    def test_is_log1p_of_nse_loss(self) -> None:
        pred = OBS * 1.2

        expected = math.log1p(float(NSELoss()(pred, OBS)))

        assert float(LogNSELoss()(pred, OBS)) == pytest.approx(expected)


class TestKGELoss:
    def test_perfect_fit(self) -> None:
        assert float(KGELoss()(OBS, OBS)) == pytest.approx(0.0, abs=1e-5)

    def test_bias_only(self) -> None:
        # scaling keeps r and the coefficient of variation, so only beta moves
        assert float(KGELoss()(OBS * 1.5, OBS)) == pytest.approx(0.5, abs=1e-5)

    def test_gradient(self) -> None:
        pred = (OBS + 1.0).requires_grad_(True)

        KGELoss()(pred, OBS).backward()

        assert torch.isfinite(pred.grad).all()
