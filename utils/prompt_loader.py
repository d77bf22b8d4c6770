"""Discover prompt folders (prompt.md + settings.yaml) and turn them into tasks."""

import logging
import os

import yaml
from pydantic import ValidationError

from config.loader import ConfigModel
from core.errors import InfrastructureError, PromptLoadError
from core.state import Task

logger = logging.getLogger(__name__)


class PromptSettings(ConfigModel):
    function_name: str
    target_object_path: str
    asm: str


def load_prompt(prompts_dir, dir_name, backend=None):
    """Load one prompt folder.

    When ``backend`` is given, the target object is checked for the function
    with ``nm``.

    Raises:
        PromptLoadError: missing files, invalid settings, or missing symbol.
    """
    prompt_dir = os.path.join(prompts_dir, dir_name)
    prompt_md = os.path.join(prompt_dir, "prompt.md")
    settings_path = os.path.join(prompt_dir, "settings.yaml")

    if not os.path.isfile(prompt_md):
        raise PromptLoadError(dir_name, "Missing prompt.md file")
    if not os.path.isfile(settings_path):
        raise PromptLoadError(dir_name, "Missing settings.yaml file")

    with open(prompt_md) as f:
        content = f.read()

    with open(settings_path) as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise PromptLoadError(dir_name, f"Invalid YAML in settings.yaml: {e}")

    try:
        settings = PromptSettings.model_validate(raw or {})
    except ValidationError as e:
        issues = ", ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise PromptLoadError(dir_name, f"Invalid settings.yaml: {issues}")

    if not os.path.isfile(settings.target_object_path):
        raise PromptLoadError(dir_name, f"Target object file not found: {settings.target_object_path}")

    if backend is not None:
        try:
            symbols = backend.defined_symbols(settings.target_object_path)
        except InfrastructureError:
            raise
        except RuntimeError as e:
            raise PromptLoadError(dir_name, f"Failed to run nm on object file: {e}")
        if settings.function_name not in symbols:
            raise PromptLoadError(
                dir_name,
                f"Function '{settings.function_name}' not found in object file: "
                f"{settings.target_object_path}",
            )

    return Task(
        prompt_path=dir_name,
        prompt_content=content,
        function_name=settings.function_name,
        target_object_path=settings.target_object_path,
        asm=settings.asm,
    )


def load_prompts(prompts_dir, backend=None):
    """Load every prompt folder under ``prompts_dir``.

    Returns:
        (tasks, errors): loaded tasks and one PromptLoadError per bad folder.
    """
    tasks = []
    errors = []
    for dir_name in sorted(os.listdir(prompts_dir)):
        if not os.path.isdir(os.path.join(prompts_dir, dir_name)):
            continue
        try:
            tasks.append(load_prompt(prompts_dir, dir_name, backend))
        except PromptLoadError as e:
            logger.warning("%s", e)
            errors.append(e)
    return tasks, errors
