"""
Exceptions
==========

Error types that distinguish the ways a dual-lens shot can go wrong.

Missing inputs are not exceptions: the pipeline answers them with a
placeholder result. Degenerate geometry is raised inside the geometry
module and turned into an unrectified fallback. Stereo engine failures
propagate to the caller as a failed shot.
"""


class BokehError(Exception):
    """Base class for all dual-lens bokeh errors."""


class GeometryDegeneracyError(BokehError):
    """
    Calibration metadata is present but unusable for rectification.

    Raised for non-finite values, a zero focal length, a zero-length
    baseline, or a pose rotation that is (numerically) singular.

    Attributes:
        reason: Human readable description of the problem
        condition: Inverse condition number of the offending matrix, if known
    """

    def __init__(self, reason: str = "Degenerate stereo geometry",
                 condition: float = 0.0):
        self.reason = reason
        self.condition = condition
        super().__init__(f"{reason} (condition={condition:.3e})")


class EngineFailureError(BokehError):
    """
    A stereo vision engine call failed or returned malformed output.

    Attributes:
        stage: Pipeline stage that failed (e.g. "rectify", "wls_filter")
        reason: Underlying error message
    """

    def __init__(self, stage: str, reason: str = "engine call failed"):
        self.stage = stage
        self.reason = reason
        super().__init__(f"Stereo engine failure during {stage}: {reason}")
