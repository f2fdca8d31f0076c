class ProviderError(Exception):
    status_code: int | None

    def __init__(self, *args, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(*args)


class TransientError(ProviderError):
    pass


class TransientFetchError(TransientError):
    pass


class TransientTriggerError(TransientError):
    pass


class AuthError(ProviderError):
    pass


class NotFoundError(ProviderError):
    pass


class RejectedError(ProviderError):
    pass


class ConfigError(Exception):
    source: str | None

    def __init__(self, *args, source: str | None = None):
        self.source = source
        super().__init__(*args)
