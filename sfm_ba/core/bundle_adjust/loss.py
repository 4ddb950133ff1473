"""
Robust loss functions

A LossFunction is translated into the `loss` / `f_scale` arguments of
scipy.optimize.least_squares. Scipy applies the scale as
    rho_scaled(s) = scale^2 * rho(s / scale^2)
on the squared residual norm s of each residual element.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Union

import numpy as np


class LossFunctionType(Enum):
    """Robust loss function types"""
    TRIVIAL_LOSS = "trivial"
    HUBER_LOSS = "huber"
    SOFT_L_ONE_LOSS = "soft_l1"
    CAUCHY_LOSS = "cauchy"
    ARCTAN_LOSS = "arctan"
    TUKEY_LOSS = "tukey"


_SCIPY_LOSS_NAMES = {
    LossFunctionType.TRIVIAL_LOSS: "linear",
    LossFunctionType.HUBER_LOSS: "huber",
    LossFunctionType.SOFT_L_ONE_LOSS: "soft_l1",
    LossFunctionType.CAUCHY_LOSS: "cauchy",
    LossFunctionType.ARCTAN_LOSS: "arctan",
}


def tukey_loss(z: np.ndarray) -> np.ndarray:
    """
    Tukey biweight on squared residuals z, unit scale

    Returns:
        Array of shape (3, m) with rho(z), rho'(z), rho''(z)
    """
    rho = np.empty((3, z.size))
    inlier = z <= 1.0
    t = 1.0 - z[inlier]

    rho[0, inlier] = (1.0 - t ** 3) / 3.0
    rho[1, inlier] = t ** 2
    rho[2, inlier] = -2.0 * t

    rho[0, ~inlier] = 1.0 / 3.0
    rho[1, ~inlier] = 0.0
    rho[2, ~inlier] = 0.0
    return rho


@dataclass(frozen=True, eq=False)
class LossFunction:
    """Robust loss shared by every residual block of one problem"""

    loss_type: LossFunctionType
    scale: float = 1.0

    @property
    def is_trivial(self) -> bool:
        return self.loss_type == LossFunctionType.TRIVIAL_LOSS

    @property
    def scipy_loss(self) -> Union[str, Callable]:
        if self.loss_type == LossFunctionType.TUKEY_LOSS:
            return tukey_loss
        return _SCIPY_LOSS_NAMES[self.loss_type]

    def least_squares_kwargs(self) -> dict:
        """Keyword arguments for scipy.optimize.least_squares"""
        if self.is_trivial:
            return {"loss": "linear"}
        return {"loss": self.scipy_loss, "f_scale": self.scale}


def loss_function_factory(loss_type: Union[LossFunctionType, str], scale: float = 1.0) -> LossFunction:
    """Create a loss function of the given type and scale"""
    loss_type = LossFunctionType(loss_type)
    if not scale > 0.0:
        raise ValueError(f"Loss function scale must be positive, got {scale}")
    return LossFunction(loss_type, float(scale))
