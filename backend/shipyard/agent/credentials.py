"""Source-control credentials handed to builds.

Token storage and OAuth refresh belong to the source-control integration;
this module only defines how a build obtains a token.
"""

from abc import ABC
from abc import abstractmethod
from collections.abc import Mapping

from shipyard.configs.app_configs import GITHUB_APP_TOKEN


class CredentialProvider(ABC):
    @abstractmethod
    def get_user_token(self, user_id: str) -> str | None:
        """The user's own token, or None if the user is not connected."""
        ...

    @abstractmethod
    def get_app_token(self) -> str:
        """Token of the first-party app that owns created repositories."""
        ...

    def resolve(self, is_imported: bool, user_id: str | None) -> str | None:
        """Token for a project's build.

        Imported repositories use the importing user's token; None means the
        user has to reconnect. First-party repositories use the app token.
        """
        if is_imported:
            if not user_id:
                return None
            return self.get_user_token(user_id)
        return self.get_app_token()


class StaticCredentialProvider(CredentialProvider):
    def __init__(
        self,
        app_token: str = GITHUB_APP_TOKEN,
        user_tokens: Mapping[str, str] | None = None,
    ) -> None:
        self._app_token = app_token
        self._user_tokens = dict(user_tokens or {})

    def get_user_token(self, user_id: str) -> str | None:
        return self._user_tokens.get(user_id) or None

    def get_app_token(self) -> str:
        return self._app_token
