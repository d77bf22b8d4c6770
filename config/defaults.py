"""Default pipeline settings."""

DEFAULTS = {
    "max_retries": 25,
    "hard_max_retries": 100,    # absolute ceiling, cannot be overridden
    "target": "gba",
    "output_dir": ".",
    "model": "claude-sonnet-4-5-20250929",
    "max_tokens": 32768,
    "sandbox_timeout": 30,
    "compile_timeout": 60,
    "allowed_commands": ["bash", "cpp", "nm", "objdump", "python3"],
    "background_grace_period_ms": 5000,
    "background_max_workers": 4,
    "config_file": "matchloop.yaml",
}
