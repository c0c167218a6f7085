"""
Analysis Engine for LogTrains.

The Engine is the orchestration layer that turns a request into an answer.
It coordinates between:
- History Selector: Which captured entries to analyse
- Window Assembler: Fitting their text into the token budget
- Prompt Builder: Framing the text with the instructional preamble
- Inference Gateway: Generating the explanation

Execution Flow:
    1. Resolve the request (MostRecent, AtOffset) or take explicit text
    2. Load the selected bodies from the Entry Store
    3. Assemble a window within the budget left after the preamble
    4. Build the prompt
    5. Call the gateway (the only long-running, cancellable step)

Design Principles:
    - Sequential: one request, one pipeline, no fan-out
    - Read-only: nothing here mutates the Entry Store
    - No retries: errors propagate to the caller with their context
"""

import logging
import threading
import time
from dataclasses import dataclass

from logtrains.assembler import Window, WindowAssembler
from logtrains.gateway.base import InferenceGateway, TokenCallback
from logtrains.prompt import Prompt, PromptBuilder
from logtrains.schema import Budget, ModelConfig, Settings
from logtrains.selector import (
    AnalysisRequest,
    ExplicitText,
    HistorySelection,
    HistorySelector,
    TextBlock,
)
from logtrains.store import EntryStore
from logtrains.tokens import TokenCounter, make_token_counter

logger = logging.getLogger(__name__)


@dataclass
class PreparedPrompt:
    """
    Everything decided before the gateway is called.

    Attributes:
        request: The request being answered
        selection: The resolved entries (None for explicit text)
        window: The assembled window
        prompt: The final prompt
        budget: The budget the window was assembled under
    """

    request: AnalysisRequest
    selection: HistorySelection | None
    window: Window
    prompt: Prompt
    budget: Budget


@dataclass
class AnalysisResult:
    """
    Result of a complete analysis.

    Attributes:
        prepared: The prompt and window that were sent
        answer: Raw text returned by the gateway
        model: Model tag that produced the answer
        duration_seconds: Time spent in generation
    """

    prepared: PreparedPrompt
    answer: str
    model: str
    duration_seconds: float = 0.0

    @property
    def window(self) -> Window:
        return self.prepared.window


class Engine:
    """
    Runs the context assembly pipeline.

    Usage:
        engine = Engine(EntryStore(settings.history_dir), settings, gateway)
        result = engine.explain(MostRecent(2))
        print(result.answer)

    Or prepare without generating (dry run):
        prepared = engine.prepare(AtOffset(0))
        print(prepared.prompt.text)
    """

    def __init__(
        self,
        store: EntryStore,
        settings: Settings | None = None,
        gateway: InferenceGateway | None = None,
        token_counter: TokenCounter | None = None,
        prompt_builder: PromptBuilder | None = None,
    ) -> None:
        """
        Initialize the engine.

        Args:
            store: Entry Store handle
            settings: Configuration (defaults if None)
            gateway: Inference gateway; only needed for explain()
            token_counter: Overrides the configured counter
            prompt_builder: Overrides the configured preamble/template
        """
        self.store = store
        self.settings = settings or Settings()
        self.gateway = gateway
        self.token_counter = token_counter or make_token_counter(self.settings.token_counter)
        if prompt_builder is None:
            if self.settings.prompt_template is not None:
                prompt_builder = PromptBuilder.from_template_file(self.settings.prompt_template)
            else:
                prompt_builder = PromptBuilder()
        self.prompt_builder = prompt_builder
        self.selector = HistorySelector(store)
        self.assembler = WindowAssembler(head_fraction=self.settings.head_fraction)

    def __enter__(self) -> "Engine":
        """Enter context manager."""
        return self

    def __exit__(self, *args: object) -> None:
        """Exit context manager."""
        self.close()

    def close(self) -> None:
        """Close the gateway, if any."""
        if self.gateway is not None:
            self.gateway.close()

    def budget(self) -> Budget:
        """The configured budget with the preamble's share reserved."""
        reserved = self.prompt_builder.reserved_tokens(self.token_counter)
        return self.settings.budget.with_preamble(reserved)

    def prepare(self, request: AnalysisRequest) -> PreparedPrompt:
        """
        Run every stage except generation.

        Raises:
            SelectionEmptyError, SelectionOutOfRangeError: Request cannot be resolved
            EntryNotFoundError, EntryCorruptError, StoreIOError: Store failures
            BudgetExhaustedError: Preamble alone exceeds the budget
        """
        selection: HistorySelection | None = None
        if isinstance(request, ExplicitText):
            blocks = [TextBlock(body=request.text)]
        else:
            selection = self.selector.select(request)
            blocks = selection.load_blocks(self.store, self.settings.include_headers)
            logger.debug(
                "%s resolved to entries %s", request.describe(), selection.identifiers
            )

        budget = self.budget()
        window = self.assembler.assemble(blocks, budget, self.token_counter)
        prompt = self.prompt_builder.build(window)
        return PreparedPrompt(
            request=request,
            selection=selection,
            window=window,
            prompt=prompt,
            budget=budget,
        )

    def explain(
        self,
        request: AnalysisRequest | PreparedPrompt,
        model_config: ModelConfig | None = None,
        on_token: TokenCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> AnalysisResult:
        """
        Prepare the prompt and generate an explanation.

        A PreparedPrompt from prepare() is sent as is, so callers that
        inspect the window first generate from exactly that window.

        Raises:
            Everything prepare() raises, plus InferenceError subclasses
        """
        if self.gateway is None:
            raise ValueError("Engine has no inference gateway configured")

        if isinstance(request, PreparedPrompt):
            prepared = request
        else:
            prepared = self.prepare(request)
        model_config = model_config or self.settings.model
        model = model_config.resolved_model()

        logger.info(
            "Generating with %s via %s (%d prompt tokens)",
            model,
            self.gateway.get_name(),
            prepared.budget.reserved_for_preamble + prepared.window.token_count,
        )
        started = time.monotonic()
        answer = self.gateway.generate(
            prepared.prompt,
            model_config,
            on_token=on_token,
            cancel_event=cancel_event,
        )
        return AnalysisResult(
            prepared=prepared,
            answer=answer,
            model=model,
            duration_seconds=time.monotonic() - started,
        )
