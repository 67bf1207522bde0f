class ApplicationError(Exception):
    """Errors answered with a raw text/plain HTTP response."""

    status_code = 500


class RequestError(ApplicationError):
    status_code = 400


class ContentTypeError(RequestError):
    pass


class EmptyBodyError(RequestError):
    pass


class EncodeError(RequestError):
    pass


class ProvisionerError(ApplicationError):
    pass


class AdmissionError(Exception):
    """Errors reported to the API server inside the AdmissionReview.

    The `code` attribute becomes `response.status.code`.
    """

    code = 400


class DecodeError(AdmissionError):
    code = 500


class DeserializeTargetError(AdmissionError):
    pass


class UnsupportedKindError(AdmissionError):
    def __init__(self, kind):
        super().__init__(f"Can not handle the kind({kind}) object")
        self.kind = kind


class PolicyViolationError(AdmissionError):
    code = 403


class PatchMarshalError(AdmissionError):
    pass
