import pytest

from core.security import decrypt_api_key
from main import build_parser
from models import Provider, RequestType
from orchestration.cli_runner import build_ai_settings


def test_generate_arguments():
    args = build_parser().parse_args(
        ["generate", "--provider", "claude", "--prompt", "Hi", "--type", "plot"]
    )
    assert args.command == "generate"
    assert args.provider == "claude"
    assert RequestType(args.type) is RequestType.PLOT
    assert not args.stream


def test_generate_requires_a_prompt_source():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["generate"])


def test_refine_arguments():
    args = build_parser().parse_args(
        ["refine", "chapter1.txt", "--chapter-title", "Arrival", "--provider", "local"]
    )
    assert args.command == "refine"
    assert args.draft_file == "chapter1.txt"
    assert args.project_id == "default"


def test_settings_use_explicit_key_encrypted():
    args = build_parser().parse_args(
        ["generate", "--provider", "gemini", "--api-key", "g-key", "--prompt", "x"]
    )
    ai_settings = build_ai_settings(args)
    assert ai_settings.provider is Provider.GEMINI
    stored = ai_settings.encrypted_key_for()
    assert stored != "g-key"
    assert decrypt_api_key(stored) == "g-key"


def test_settings_fall_back_to_configuration(monkeypatch):
    from config import settings

    monkeypatch.setattr(settings, "OPENAI_API_KEY", "env-key")
    monkeypatch.setattr(settings, "DEFAULT_MODEL", "gpt-4o")
    args = build_parser().parse_args(["generate", "--provider", "openai", "--prompt", "x"])
    ai_settings = build_ai_settings(args)
    assert ai_settings.model == "gpt-4o"
    assert decrypt_api_key(ai_settings.encrypted_key_for()) == "env-key"


def test_local_provider_without_key_has_no_keys():
    args = build_parser().parse_args(
        ["refine", "d.txt", "--provider", "local", "--endpoint", "http://localhost:1234"]
    )
    ai_settings = build_ai_settings(args)
    assert ai_settings.api_keys == {}
    assert ai_settings.local_endpoint == "http://localhost:1234"


def test_local_provider_rejected_without_loopback(monkeypatch):
    from config import settings

    monkeypatch.setattr(settings, "SUPPORTS_LOOPBACK_NETWORKING", False)
    with pytest.raises(SystemExit):
        build_parser().parse_args(["generate", "--provider", "local", "--prompt", "x"])
    args = build_parser().parse_args(["generate", "--provider", "openai", "--prompt", "x"])
    assert args.provider == "openai"


def test_default_local_provider_rejected_without_loopback(monkeypatch):
    from config import settings

    monkeypatch.setattr(settings, "SUPPORTS_LOOPBACK_NETWORKING", False)
    monkeypatch.setattr(settings, "DEFAULT_PROVIDER", "local")
    args = build_parser().parse_args(["generate", "--prompt", "x"])
    with pytest.raises(ValueError, match="not available on the mobile platform"):
        build_ai_settings(args)


@pytest.mark.asyncio
async def test_unavailable_provider_exits_before_any_request(monkeypatch, capsys):
    from config import settings
    from orchestration import cli_runner

    monkeypatch.setattr(settings, "SUPPORTS_LOOPBACK_NETWORKING", False)
    monkeypatch.setattr(settings, "DEFAULT_PROVIDER", "local")
    args = build_parser().parse_args(["generate", "--prompt", "x"])

    assert await cli_runner._run(args) == 2
    assert "local" in capsys.readouterr().err
