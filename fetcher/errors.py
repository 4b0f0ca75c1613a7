class FetcherError(Exception):
    pass


class NonRetryableError(FetcherError):
    """Job errors that go straight to failed without queue retries."""


class SongNotFoundError(NonRetryableError, LookupError):
    def __init__(self, song_id):
        super().__init__(f"Song not found: {song_id}")
        self.song_id = song_id


class ResolutionError(NonRetryableError):
    pass


class JobNotFoundError(FetcherError, LookupError):
    def __init__(self, job_id):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobOwnershipError(FetcherError, PermissionError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} does not belong to this user")
        self.job_id = job_id


class InvalidTransitionError(FetcherError, ValueError):
    pass


class DownloadError(FetcherError, RuntimeError):
    pass


class JobCancelledError(FetcherError):
    pass


class RangeNotSatisfiableError(FetcherError, ValueError):
    def __init__(self, size):
        super().__init__(f"Requested range not satisfiable (size={size})")
        self.size = size
