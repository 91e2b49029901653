"""Unit tests for build credential resolution."""

from shipyard.agent.credentials import StaticCredentialProvider


class TestCredentialResolution:
    def test_first_party_uses_app_token(self) -> None:
        provider = StaticCredentialProvider(app_token="app-tok")
        assert provider.resolve(is_imported=False, user_id="u1") == "app-tok"

    def test_imported_uses_user_token(self) -> None:
        provider = StaticCredentialProvider(
            app_token="app-tok", user_tokens={"u1": "user-tok"}
        )
        assert provider.resolve(is_imported=True, user_id="u1") == "user-tok"

    def test_imported_without_connection(self) -> None:
        provider = StaticCredentialProvider(app_token="app-tok")
        assert provider.resolve(is_imported=True, user_id="u1") is None

    def test_imported_without_user(self) -> None:
        provider = StaticCredentialProvider(
            app_token="app-tok", user_tokens={"u1": "user-tok"}
        )
        assert provider.resolve(is_imported=True, user_id=None) is None

    def test_empty_user_token_counts_as_missing(self) -> None:
        provider = StaticCredentialProvider(user_tokens={"u1": ""})
        assert provider.get_user_token("u1") is None
