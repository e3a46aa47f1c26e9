class ValidationError(ValueError):
    status_code = 400


class InvalidFileExtension(ValidationError):
    pass


class FileHashMismatch(ValidationError):
    pass


class MalformedResultsFile(ValidationError):
    pass


class UploadTooLarge(ValidationError):
    status_code = 413


class NotFoundError(LookupError):
    status_code = 404
