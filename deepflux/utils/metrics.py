"""Loss functions for fitting simulated series to observations.

Observation gaps are encoded as NaN and dropped before any statistic is taken,
so a loss can be computed directly against an incomplete gauge record.
"""

import torch
import torch.nn as nn


def _mask_nan(y_pred: torch.Tensor, y_true: torch.Tensor):
    mask = ~torch.isnan(y_true)
    return y_pred[mask], y_true[mask]


def _error_ratio(y_pred: torch.Tensor, y_true: torch.Tensor, eps: float) -> torch.Tensor:
    """Sum of squared errors over the variance of the observations."""
    sse = (y_pred - y_true).square().sum()
    sst = (y_true - y_true.mean()).square().sum()
    return sse / (sst + eps)


class NSELoss(nn.Module):
    """
    Nash-Sutcliffe Efficiency loss.

    Returns 1 - NSE, so 0 is a perfect fit and 1 is no better than the
    observed mean.
    """

    def __init__(self, eps: float = 1e-6):
        super(NSELoss, self).__init__()
        self.eps = eps

    def forward(self, y_pred: torch.Tensor, y_true: torch.Tensor) -> torch.Tensor:
        """
        Parameters
        ----------
        y_pred
            Simulated series.
        y_true
            Observed series, NaN where missing.

        Returns
        -------
        torch.Tensor
            Scalar loss.
        """
        return _error_ratio(*_mask_nan(y_pred, y_true), self.eps)


class LogNSELoss(nn.Module):
    """``log(1 + (1 - NSE))``, which damps the influence of a few large misses."""

    def __init__(self, eps: float = 1e-6):
        super(LogNSELoss, self).__init__()
        self.eps = eps

    def forward(self, y_pred: torch.Tensor, y_true: torch.Tensor) -> torch.Tensor:
        return torch.log1p(_error_ratio(*_mask_nan(y_pred, y_true), self.eps))


class KGELoss(nn.Module):
    """
    Kling-Gupta Efficiency loss, 1 - KGE.

    KGE is the distance from the ideal point of the correlation ``r``, the bias
    ratio ``beta`` and the variability ratio ``gamma`` (ratio of coefficients of
    variation).
    """

    def __init__(self, eps: float = 1e-6):
        super(KGELoss, self).__init__()
        self.eps = eps

    def forward(self, y_pred: torch.Tensor, y_true: torch.Tensor) -> torch.Tensor:
        y_pred, y_true = _mask_nan(y_pred, y_true)
        eps = self.eps
        dev_pred = y_pred - y_pred.mean()
        dev_true = y_true - y_true.mean()

        r = (dev_pred * dev_true).sum() / (dev_pred.square().sum().sqrt() * dev_true.square().sum().sqrt() + eps)
        beta = y_pred.mean() / (y_true.mean() + eps)
        cv_pred = y_pred.std() / (y_pred.mean() + eps)
        cv_true = y_true.std() / (y_true.mean() + eps)
        gamma = cv_pred / (cv_true + eps)

        return torch.sqrt((r - 1) ** 2 + (beta - 1) ** 2 + (gamma - 1) ** 2)
