"""Tests for utils.prompt_loader."""

import pytest

from core.errors import InfrastructureError, PromptLoadError
from utils.prompt_loader import load_prompt, load_prompts


class FakeBackend:
    def __init__(self, symbols=(), error=None):
        self.symbols = list(symbols)
        self.error = error
        self.paths = []

    def defined_symbols(self, path):
        self.paths.append(path)
        if self.error:
            raise self.error
        return self.symbols


def _prompt(prompts_dir, name, function="SimpleAdd", obj=True, settings=None, prompt=True):
    folder = prompts_dir / name
    folder.mkdir(parents=True)
    obj_path = folder / "target.o"
    if obj:
        obj_path.write_bytes(b"")
    if prompt:
        (folder / "prompt.md").write_text(f"Decompile `{function}`.\n")
    if settings is None:
        settings = (
            f"functionName: {function}\n"
            f"targetObjectPath: {obj_path}\n"
            "asm: |\n"
            f"  glabel {function}\n"
            "      adds r0, r0, r1\n"
            "      bx lr\n"
        )
    (folder / "settings.yaml").write_text(settings)
    return folder


def test_load_prompt(tmp_path):
    _prompt(tmp_path, "simple-add")
    task = load_prompt(str(tmp_path), "simple-add", FakeBackend(["SimpleAdd"]))
    assert task.prompt_path == "simple-add"
    assert task.function_name == "SimpleAdd"
    assert task.prompt_content == "Decompile `SimpleAdd`.\n"
    assert task.asm.startswith("glabel SimpleAdd\n")
    assert task.target_object_path.endswith("target.o")


def test_missing_prompt_md(tmp_path):
    _prompt(tmp_path, "p", prompt=False)
    with pytest.raises(PromptLoadError, match="Missing prompt.md"):
        load_prompt(str(tmp_path), "p")


def test_missing_settings(tmp_path):
    (tmp_path / "p").mkdir()
    (tmp_path / "p" / "prompt.md").write_text("x")
    with pytest.raises(PromptLoadError, match="Missing settings.yaml"):
        load_prompt(str(tmp_path), "p")


def test_invalid_yaml(tmp_path):
    _prompt(tmp_path, "p", settings="functionName: [broken\n")
    with pytest.raises(PromptLoadError, match="Invalid YAML"):
        load_prompt(str(tmp_path), "p")


def test_settings_missing_field(tmp_path):
    _prompt(tmp_path, "p", settings="functionName: f\nasm: x\n")
    with pytest.raises(PromptLoadError, match="Invalid settings.yaml: targetObjectPath"):
        load_prompt(str(tmp_path), "p")


def test_missing_object_file(tmp_path):
    _prompt(tmp_path, "p", obj=False)
    with pytest.raises(PromptLoadError, match="Target object file not found"):
        load_prompt(str(tmp_path), "p")


def test_function_missing_from_object(tmp_path):
    _prompt(tmp_path, "p")
    with pytest.raises(PromptLoadError, match="Function 'SimpleAdd' not found in object file"):
        load_prompt(str(tmp_path), "p", FakeBackend(["Other"]))


def test_nm_failure_reported(tmp_path):
    _prompt(tmp_path, "p")
    with pytest.raises(PromptLoadError, match="Failed to run nm"):
        load_prompt(str(tmp_path), "p", FakeBackend(error=RuntimeError("nm failed")))


def test_missing_toolchain_propagates(tmp_path):
    _prompt(tmp_path, "p")
    with pytest.raises(InfrastructureError):
        load_prompt(str(tmp_path), "p", FakeBackend(error=InfrastructureError("no nm")))


def test_error_names_prompt_folder(tmp_path):
    _prompt(tmp_path, "broken", obj=False)
    with pytest.raises(PromptLoadError) as info:
        load_prompt(str(tmp_path), "broken")
    assert info.value.prompt_path == "broken"
    assert str(info.value).startswith("Error loading prompt 'broken':")


def test_load_prompts_sorted_and_collects_errors(tmp_path):
    _prompt(tmp_path, "b-second", function="Second")
    _prompt(tmp_path, "a-first", function="First")
    _prompt(tmp_path, "c-broken", obj=False)
    (tmp_path / "README.md").write_text("not a prompt")

    tasks, errors = load_prompts(str(tmp_path), FakeBackend(["First", "Second"]))

    assert [t.function_name for t in tasks] == ["First", "Second"]
    assert [e.prompt_path for e in errors] == ["c-broken"]


def test_load_prompts_missing_dir(tmp_path):
    with pytest.raises(OSError):
        load_prompts(str(tmp_path / "nope"))
