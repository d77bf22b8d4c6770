"""Wire configured stages into a PipelineOrchestrator."""

import logging

from config.defaults import DEFAULTS
from config.loader import get_plugin_config
from core.objdump import ObjdumpBackend
from core.orchestrator import PipelineOrchestrator
from plugins.claude_runner import ClaudeRunnerConfig, ClaudeRunnerPlugin
from plugins.compiler import CompilerPlugin
from plugins.decompiler import DecompilerConfig, DecompilerPlugin
from plugins.get_context import GetContextPlugin
from plugins.objdiff import ObjdiffPlugin
from plugins.permuter import DecompPermuterPlugin, PermuterConfig

logger = logging.getLogger(__name__)

PLUGIN_CLASSES = (
    GetContextPlugin,
    DecompilerPlugin,
    CompilerPlugin,
    DecompPermuterPlugin,
    ClaudeRunnerPlugin,
    ObjdiffPlugin,
)


def list_plugins():
    """(id, description) for every stage that can be wired in."""
    return [(cls.id, cls.description) for cls in PLUGIN_CLASSES]


def build_orchestrator(config_file, event_handler=None, backend=None, claude_client=None):
    """Build the orchestrator for a loaded ConfigFile.

    Phases:
    - setup: get-context
    - programmatic (when m2c is enabled): m2c -> compiler -> [decomp-permuter] -> objdiff
    - retry: claude-runner -> compiler -> objdiff, with decomp-permuter
      running only in the background when enabled

    Raises:
        ConfigValidationError: a plugin section does not validate.
    """
    pipeline = config_file.global_
    backend = backend or ObjdumpBackend(pipeline.target)
    compile_timeout = DEFAULTS["compile_timeout"]

    m2c_config = get_plugin_config(config_file, DecompilerPlugin.id, DecompilerConfig)
    permuter_config = get_plugin_config(config_file, DecompPermuterPlugin.id, PermuterConfig)
    claude_config = get_plugin_config(config_file, ClaudeRunnerPlugin.id, ClaudeRunnerConfig)

    orchestrator = PipelineOrchestrator(config=pipeline, event_handler=event_handler)
    orchestrator.register_setup_flow(
        GetContextPlugin(pipeline.get_context_script, timeout=compile_timeout),
    )

    permuter = None
    if permuter_config.enable:
        permuter = DecompPermuterPlugin(
            permuter_config, compiler_script=pipeline.compiler_script, target=pipeline.target,
        )

    if m2c_config.enable:
        programmatic = [
            DecompilerPlugin(m2c_config, target=pipeline.target, backend=backend),
            CompilerPlugin(pipeline.compiler_script, timeout=compile_timeout),
        ]
        if permuter is not None:
            programmatic.append(permuter)
        programmatic.append(ObjdiffPlugin(backend=backend))
        orchestrator.register_programmatic_flow(*programmatic)
    else:
        logger.info("m2c disabled, skipping the programmatic flow")

    orchestrator.register(ClaudeRunnerPlugin(claude_config, client=claude_client))
    orchestrator.register(CompilerPlugin(pipeline.compiler_script, timeout=compile_timeout))
    orchestrator.register(ObjdiffPlugin(backend=backend))
    if permuter is not None:
        orchestrator.register(permuter, background=permuter.background, foreground=False)

    return orchestrator
