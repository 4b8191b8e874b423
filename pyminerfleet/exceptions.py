"""
Error taxonomy for pyminerfleet.

Every error raised by the library derives from FleetError and carries a
machine readable code, an HTTP status for the server layer, a retryable
flag reported to API callers, and an optional remediation suggestion.
The gateway retries only DeviceConnectionError and DeviceTimeoutError.

    ValidationError         bad caller input, never retried
    DeviceNotFoundError     unknown device id
    JobNotFoundError        unknown job id
    DeviceOfflineError      device unreachable (retryable at job/batch level)
    DeviceBusyError         another operation is in progress on the device
    AuthenticationError     login rejected or token refused (not retried)
    DeviceConnectionError   connectivity failure (retried by the gateway)
    DeviceTimeoutError      remote call exceeded its timeout (retried by the gateway)
    InternalError           anything unclassified
"""
from typing import Any, Dict, Optional


class FleetError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500
    retryable = False
    default_suggestion: Optional[str] = None

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 suggestion: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.suggestion = suggestion or self.default_suggestion

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "code": self.code,
            "message": self.message,
            "statusCode": self.status_code,
            "retryable": self.retryable,
        }
        if self.details:
            body["details"] = self.details
        if self.suggestion:
            body["suggestion"] = self.suggestion
        return {"error": body}


class ValidationError(FleetError):
    code = "VALIDATION_ERROR"
    status_code = 400
    default_suggestion = "Check the request parameters and try again"


class DeviceNotFoundError(FleetError):
    code = "DEVICE_NOT_FOUND"
    status_code = 404
    default_suggestion = "Use the device list to see registered devices"

    def __init__(self, device_id: str):
        super().__init__(f"Device '{device_id}' not found", {"deviceId": device_id})
        self.device_id = device_id


class JobNotFoundError(FleetError):
    code = "JOB_NOT_FOUND"
    status_code = 404
    default_suggestion = "Verify the job ID is correct"

    def __init__(self, job_id: str):
        super().__init__(f"Job '{job_id}' not found", {"jobId": job_id})
        self.job_id = job_id


class DeviceOfflineError(FleetError):
    code = "DEVICE_OFFLINE"
    status_code = 503
    retryable = True
    default_suggestion = "Verify device is online and reachable"

    def __init__(self, device_id: str, reason: Optional[str] = None):
        message = f"Device '{device_id}' is offline"
        if reason:
            message += f": {reason}"
        super().__init__(message, {"deviceId": device_id})
        self.device_id = device_id


class DeviceBusyError(FleetError):
    code = "DEVICE_BUSY"
    status_code = 409
    default_suggestion = "Wait for the running operation to finish and try again"


class AuthenticationError(FleetError):
    code = "AUTHENTICATION_FAILED"
    status_code = 401
    default_suggestion = "Verify the device username and password"

    def __init__(self, device: str, reason: Optional[str] = None):
        message = f"Authentication failed for {device}"
        if reason:
            message += f": {reason}"
        super().__init__(message, {"device": device})
        self.device = device


class DeviceConnectionError(FleetError):
    code = "CONNECTION_FAILED"
    status_code = 502
    retryable = True
    default_suggestion = "Verify device is online and reachable"

    def __init__(self, device: str, reason: Optional[str] = None, attempts: Optional[int] = None):
        message = f"Cannot connect to device at {device}"
        if reason:
            message += f": {reason}"
        details: Dict[str, Any] = {"device": device}
        if reason:
            details["reason"] = reason
        if attempts is not None:
            details["attempts"] = attempts
        super().__init__(message, details)
        self.device = device
        self.reason = reason


class DeviceTimeoutError(FleetError):
    code = "TIMEOUT"
    status_code = 504
    retryable = True
    default_suggestion = "Verify device is online and reachable"

    def __init__(self, device: str, timeout: float):
        super().__init__(f"Request to {device} timed out after {timeout}s",
                         {"device": device, "timeout": timeout})
        self.device = device
        self.timeout = timeout


class InternalError(FleetError):
    pass


def wrap_error(error: BaseException) -> FleetError:
    """Convert any exception into a FleetError."""
    if isinstance(error, FleetError):
        return error
    return InternalError(str(error) or error.__class__.__name__,
                         {"originalError": error.__class__.__name__})
