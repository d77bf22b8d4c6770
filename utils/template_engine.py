"""Template engine for ``{{variable}}`` placeholders in scripts and prompts."""

import os
import re

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def get_templates_dir():
    """Return the absolute path to the templates directory."""
    return os.path.join(os.path.dirname(os.path.dirname(__file__)), "templates")


def load_template(template_name):
    """Load a bundled template file and return its contents as a string."""
    templates_dir = get_templates_dir()
    path = os.path.join(templates_dir, template_name)
    resolved = os.path.realpath(path)
    if not resolved.startswith(os.path.realpath(templates_dir) + os.sep):
        raise ValueError(f"Template path escapes templates directory: {template_name}")
    with open(resolved, "r") as f:
        return f.read()


def render(text, variables):
    """Substitute ``{{name}}`` placeholders.

    Unknown placeholders are left as-is rather than raising errors.
    """
    def replace(match):
        name = match.group(1)
        if name in variables:
            return str(variables[name])
        return match.group(0)

    return _PLACEHOLDER.sub(replace, text)
