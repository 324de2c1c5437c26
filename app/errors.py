class TileCadError(Exception):
    """Base error for the tile pipeline."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AuthError(TileCadError):
    pass


class AuthNotConfiguredError(AuthError):
    pass


class AuthProviderRejectedError(AuthError):
    pass


class ProvisionError(TileCadError):
    pass


class StagingError(TileCadError):
    pass


class UploadError(TileCadError):
    def __init__(self, message: str, *, file_name: str, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.file_name = file_name


class SubmissionError(TileCadError):
    pass


class JobError(TileCadError):
    def __init__(self, message: str, *, work_item_id: str, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.work_item_id = work_item_id


class JobFailedError(JobError):
    def __init__(
        self,
        message: str,
        *,
        work_item_id: str,
        status: str,
        report: str | None = None,
    ) -> None:
        super().__init__(message, work_item_id=work_item_id)
        self.status = status
        self.report = report


class JobTimeoutError(JobError):
    def __init__(self, message: str, *, work_item_id: str, attempts: int) -> None:
        super().__init__(message, work_item_id=work_item_id)
        self.attempts = attempts


class DownloadError(TileCadError):
    pass


class ViewerError(TileCadError):
    pass


class NotFoundError(TileCadError):
    pass
