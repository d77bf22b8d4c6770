"""Exception types that steer pipeline control flow."""


class PipelineAbortError(Exception):
    """The user asked to stop the run. Propagates through the orchestrator
    so the benchmark can return partial results."""

    def __init__(self, message="Pipeline aborted by user"):
        super().__init__(message)


class InfrastructureError(Exception):
    """Unrecoverable environment failure (missing toolchain, unusable work dir).

    Never folded into a stage result: the run aborts.
    """


class SymbolNotFoundError(Exception):
    """The requested symbol is missing from one or both object files."""

    def __init__(self, symbol, available_symbols, missing_sides=("current",)):
        self.symbol = symbol
        self.available_symbols = list(available_symbols)
        self.missing_sides = tuple(missing_sides)
        super().__init__(
            f"Symbol `{symbol}` not found in {' and '.join(self.missing_sides)} object"
        )

    def feedback(self):
        """Agent-facing explanation: most of the time the function was misnamed."""
        available = ", ".join(self.available_symbols) or "(none)"
        return (
            f"Symbol `{self.symbol}` not found.\n\n"
            f"Available symbols in current object: {available}.\n\n"
            f"Did you name your function `{self.symbol}`?"
        )


class PromptLoadError(Exception):
    """A prompt directory is missing files or has invalid settings."""

    def __init__(self, prompt_path, message):
        self.prompt_path = prompt_path
        super().__init__(f"Error loading prompt '{prompt_path}': {message}")
