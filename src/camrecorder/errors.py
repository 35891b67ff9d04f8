"""Exception hierarchy shared by the recorder components."""


class CamRecorderError(Exception):
    """Base class for all errors raised by this package."""


class SessionStoreError(CamRecorderError):
    """A persisted cookie file exists but cannot be read or parsed."""


class DetectionError(CamRecorderError):
    """Navigation or rule evaluation failed for one platform binding."""


class CaptureError(CamRecorderError):
    """Base class for capture process failures."""


class CaptureConfigurationError(CaptureError):
    """No capture tool is enabled for this recording."""


class CaptureStartError(CaptureError):
    """Every enabled capture tool failed to spawn."""


class UploadError(CamRecorderError):
    """A remote host rejected an upload or could not be reached."""


class StoreError(CamRecorderError):
    """Entity store lookup or update failed."""
