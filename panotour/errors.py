class TourError(Exception):
    code = "tour_error"

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(TourError):
    """Tour snapshot is internally inconsistent (dangling link target, missing media url, ...).

    `problems` holds one entry per offending record so a caller can list them all.
    """

    code = "validation_failed"

    def __init__(self, message, problems=None, **details):
        super().__init__(message, **details)
        self.problems = list(problems or [])

    def to_dict(self):
        payload = super().to_dict()
        if self.problems:
            payload["problems"] = self.problems
        return payload


class NotFoundError(TourError):
    code = "not_found"


class NotReadyError(TourError):
    code = "not_ready"


class LoadFailedError(TourError):
    code = "load_failed"
