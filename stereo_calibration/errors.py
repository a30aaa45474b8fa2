"""Exception classes for the calibration pipeline."""


class CalibrationError(Exception):
    """Base exception for all calibration errors."""

    pass


class ImageListError(CalibrationError):
    """Raised when the input image list is empty, unreadable or has odd length in stereo mode."""

    pass


class InsufficientDataError(CalibrationError):
    """Raised when too few frames or pairs were accepted to run the solver."""

    def __init__(self, message: str, accepted: int = 0, required: int = 0):
        self.accepted = accepted
        self.required = required
        super().__init__(message)


class NumericallyInvalidCalibrationError(CalibrationError):
    """Raised when the solver returns non-finite camera parameters."""

    pass


class ArtifactError(CalibrationError):
    """Raised when a calibration file is malformed or cannot be extended."""

    pass
