"""
RF (Radio Frequency) signal models.

Submodules:
    pathloss: Log-distance path-loss model, Taylor linearizations of orders
        1 to 3 with analytic derivatives, and the transmit-power-free RSSI
        difference used for joint position and source estimation
    variance_propagation: Delta-method variance of the model predictions
"""

from rssi_positioning.rf.pathloss import (
    MIN_SQR_DISTANCE,
    LinearizationOrder,
    PathLossEvaluator,
    pathloss_derivatives,
    received_power,
    rss_to_distance,
    rssi_difference,
)
from rssi_positioning.rf.variance_propagation import (
    propagate_rssi_difference_variance,
    propagate_rssi_variance,
)

__all__ = [
    # Path-loss model
    "MIN_SQR_DISTANCE",
    "LinearizationOrder",
    "PathLossEvaluator",
    "pathloss_derivatives",
    "received_power",
    "rss_to_distance",
    "rssi_difference",
    # Variance propagation
    "propagate_rssi_variance",
    "propagate_rssi_difference_variance",
]
