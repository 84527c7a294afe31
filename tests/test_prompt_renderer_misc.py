import prompt_renderer
import pytest
from jinja2 import DictLoader, Environment


def test_render_template_with_custom_env(monkeypatch):
    env = Environment(
        loader=DictLoader({"greet/hello.j2": "Hello {{ name }}"}), autoescape=False
    )
    monkeypatch.setattr(prompt_renderer, "_env", env)
    result = prompt_renderer.render_template("greet", "hello", {"name": "Bob"})
    assert result == "Hello Bob"


def test_single_brace_placeholders_survive_rendering(monkeypatch):
    env = Environment(
        loader=DictLoader({"draft/x.j2": 'Reply as {"revisedText": "..."} for {title}'}),
        autoescape=False,
    )
    monkeypatch.setattr(prompt_renderer, "_env", env)
    result = prompt_renderer.render_template("draft", "x", {})
    assert result == 'Reply as {"revisedText": "..."} for {title}'


def test_missing_template_raises_lookup_error():
    with pytest.raises(LookupError):
        prompt_renderer.render_template("draft", "does_not_exist", {})


def test_shipped_templates_are_listed():
    names = prompt_renderer.list_templates()
    for expected in (
        "draft/critique.j2",
        "draft/revise.j2",
        "draft/continue.j2",
        "synopsis/generate.j2",
        "chapter/generate_basic.j2",
    ):
        assert expected in names
    assert prompt_renderer.list_templates("draft") == [
        "draft/continue.j2",
        "draft/critique.j2",
        "draft/revise.j2",
    ]
