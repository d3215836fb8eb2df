from __future__ import annotations
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from labforge.core.errors import UserCancelledError
from labforge.core.ports import AIService, CancellationToken, ChunkCallback, ProviderKind, StatusCallback
from labforge.prompts.store import PromptStore
from labforge.resilience.retry import cancellable_sleep
from labforge.storage.history import RunHistory
from labforge.workflow.labs import (
    ParsedLab,
    challenge_title,
    join_labs,
    parse_labs,
    safe_filename,
    series_file_name,
    split_series_output,
)

logger = logging.getLogger(__name__)

SleepFn = Callable[[float, CancellationToken], Awaitable[None]]


class WorkflowMode(str, Enum):
    TOPIC = "topic"
    DOCUMENT = "document"


class CreationMode(str, Enum):
    SERIES = "series"
    SINGLE = "single"


class AgentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Agent:
    id: int
    title: str
    description: str
    modes: Tuple[WorkflowMode, ...]
    duration: Optional[int] = None  # rough expected seconds, for progress display


AGENTS: Tuple[Agent, ...] = (
    Agent(1, "Create & Split Lab Series",
          "Generates a lab series (or a single lab) from a topic and splits it into documents.",
          (WorkflowMode.TOPIC,), 30),
    Agent(2, "Restructure Document",
          "Restructures an existing document into the lab layout.",
          (WorkflowMode.DOCUMENT,), 25),
    Agent(3, "Format and Finalize Lab(s)",
          "Formats every lab, adding guided and advanced hints.",
          (WorkflowMode.TOPIC, WorkflowMode.DOCUMENT), 60),
    Agent(4, "Export All Finished Labs",
          "Writes every finished lab to its own markdown file.",
          (WorkflowMode.TOPIC, WorkflowMode.DOCUMENT)),
)


class WorkflowError(RuntimeError):
    pass


@dataclass
class StageResult:
    agent_id: int
    status: AgentStatus
    output: str = ""
    labs: List[ParsedLab] = field(default_factory=list)
    files: List[Path] = field(default_factory=list)


class LabWorkflow:
    """
    Runs the lab agents one stage at a time against an AIService.

    Each stage takes the output of the last completed stage as input; running
    the first stage (or any stage with nothing completed yet) starts over from
    the initial content. A stage stopped through the token goes back to pending;
    any other failure marks it as error and propagates.
    """

    def __init__(
        self,
        service: AIService,
        prompts: PromptStore,
        provider: Union[str, ProviderKind],
        *,
        mode: Union[str, WorkflowMode] = WorkflowMode.TOPIC,
        creation_mode: Union[str, CreationMode] = CreationMode.SERIES,
        num_labs: int = 10,
        num_requirements: int = 4,
        history: Optional[RunHistory] = None,
        export_dir: Optional[Path] = None,
        source_name: Optional[str] = None,
        lab_pause: float = 1.5,
        sleep: Optional[SleepFn] = None,
    ):
        self.service = service
        self.prompts = prompts
        self.provider = ProviderKind.parse(provider)
        self.mode = WorkflowMode(mode)
        self.creation_mode = CreationMode(creation_mode)
        self.num_labs = num_labs
        self.num_requirements = num_requirements
        self.history = history or RunHistory()
        self.export_dir = Path(export_dir) if export_dir else None
        self.source_name = source_name
        self.lab_pause = lab_pause
        self._sleep = sleep or cancellable_sleep

        self.statuses: Dict[int, AgentStatus] = {a.id: AgentStatus.PENDING for a in self.active_agents}
        self.labs: List[ParsedLab] = []
        self.processed_labs: List[ParsedLab] = []
        self.series_overview: Optional[str] = None
        self._resume()

    @property
    def active_agents(self) -> List[Agent]:
        return [a for a in AGENTS if self.mode in a.modes]

    def agent(self, agent_id: int) -> Agent:
        for a in self.active_agents:
            if a.id == agent_id:
                return a
        raise WorkflowError(f"Agent {agent_id} is not part of the {self.mode.value} workflow.")

    def prompt_for(self, agent_id: int) -> str:
        if agent_id == 1:
            key = "agent1_single" if self.creation_mode is CreationMode.SINGLE else "agent1_series"
            values = {"NUM_LABS": self.num_labs, "NUM_REQUIREMENTS": self.num_requirements}
            return self.prompts.get(key, self.provider, values)
        if agent_id == 2:
            return self.prompts.get("restructure", self.provider)
        return self.prompts.get("combined", self.provider)

    def _resume(self) -> None:
        """Pick up the stages a resumed run history already completed."""
        outputs = self.history.outputs
        for a in self.active_agents:
            if a.id in outputs:
                self.statuses[a.id] = AgentStatus.DONE
        if 1 in outputs:
            self.labs = parse_labs(outputs[1])
        if 3 in outputs:
            self.processed_labs = parse_labs(outputs[3])
        if outputs:
            logger.info("resumed run %s with completed agents %s", self.history.run_id, sorted(outputs))

    def _previous(self, agent: Agent) -> Optional[Agent]:
        active = self.active_agents
        i = active.index(agent)
        return active[i - 1] if i > 0 else None

    def _last_done(self) -> Optional[Agent]:
        for a in reversed(self.active_agents):
            if self.statuses.get(a.id) is AgentStatus.DONE:
                return a
        return None

    def _reset(self) -> None:
        self.statuses = {a.id: AgentStatus.PENDING for a in self.active_agents}
        self.labs = []
        self.processed_labs = []
        self.series_overview = None
        self.history.clear_outputs()

    async def run_agent(
        self,
        agent_id: int,
        initial_content: str,
        token: CancellationToken,
        on_chunk: Optional[ChunkCallback] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> StageResult:
        """Run one stage. When on_chunk is given, text stages stream through it."""
        agent = self.agent(agent_id)
        last_done = self._last_done()
        outputs = self.history.outputs

        if last_done and agent is not self.active_agents[0]:
            content = outputs.get(last_done.id, "")
        else:
            self._reset()
            content = initial_content

        self.statuses[agent.id] = AgentStatus.PROCESSING
        logger.info("agent %d (%s) started", agent.id, agent.title)
        try:
            token.raise_if_cancelled()
            if agent.id == 1:
                result = await self._create_labs(content, token, on_chunk, on_status)
            elif agent.id == 3:
                prev = self._previous(agent)
                source = outputs.get(prev.id, "") if prev and last_done else ""
                result = await self._format_labs(source or initial_content, token, on_status)
            elif agent.id == 4:
                result = self._export_labs()
            else:
                output = await self._call(self.prompt_for(agent.id), content, token, on_chunk, on_status)
                result = StageResult(agent.id, AgentStatus.DONE, output)
            token.raise_if_cancelled()
        except UserCancelledError:
            self.statuses[agent.id] = AgentStatus.PENDING
            self.history.record_stage(agent.id, agent.title, "", status="cancelled")
            logger.info("agent %d stopped by user", agent.id)
            raise
        except Exception as e:
            self.statuses[agent.id] = AgentStatus.ERROR
            self.history.record_stage(agent.id, agent.title, str(e), status="error")
            logger.error("agent %d failed: %s", agent.id, e)
            raise

        self.statuses[agent.id] = AgentStatus.DONE
        # the formatted labs themselves are kept so a resumed run can still export them
        recorded = join_labs(result.labs) if agent.id == 3 else result.output
        self.history.record_stage(agent.id, agent.title, recorded)
        logger.info("agent %d done", agent.id)
        return result

    async def run_all(
        self,
        initial_content: str,
        token: CancellationToken,
        on_chunk: Optional[ChunkCallback] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> List[StageResult]:
        """Run every stage of the current mode in order. Export is skipped without an export dir."""
        results: List[StageResult] = []
        for agent in self.active_agents:
            if agent.id == 4 and self.export_dir is None:
                self.statuses[agent.id] = AgentStatus.SKIPPED
                results.append(StageResult(agent.id, AgentStatus.SKIPPED))
                continue
            results.append(await self.run_agent(agent.id, initial_content, token, on_chunk, on_status))
        return results

    async def _call(
        self,
        prompt: str,
        content: str,
        token: CancellationToken,
        on_chunk: Optional[ChunkCallback],
        on_status: Optional[StatusCallback],
    ) -> str:
        if on_chunk is not None:
            return await self.service.call_streaming(prompt, content, on_chunk, token, on_status)
        return await self.service.call_once(prompt, content, token, on_status)

    async def _create_labs(self, content, token, on_chunk, on_status) -> StageResult:
        self.processed_labs = []
        text = await self._call(self.prompt_for(1), content, token, on_chunk, on_status)
        token.raise_if_cancelled()

        files: List[Path] = []
        if self.creation_mode is CreationMode.SERIES:
            split = split_series_output(text)
            if split is None:
                raise WorkflowError(
                    "The first agent did not produce the split output format for the lab series."
                )
            self.series_overview, text = split
            if self.export_dir:
                files.append(self._write(series_file_name(self.series_overview), self.series_overview))

        self.labs = parse_labs(text)
        return StageResult(1, AgentStatus.DONE, text, labs=list(self.labs), files=files)

    async def _format_labs(self, source: str, token, on_status) -> StageResult:
        labs = self.labs
        if not labs:
            labs = parse_labs(source)
            if not labs and source:
                title = challenge_title(source) or self.source_name or "Custom Lab"
                labs = [ParsedLab(title=title, content=source)]
            self.labs = labs
        if not labs:
            raise WorkflowError("No labs found to process. Provide a document or run the first agent.")

        prompt = self.prompt_for(3)
        processed: List[ParsedLab] = []
        for i, lab in enumerate(labs):
            token.raise_if_cancelled()
            logger.info("processing lab %d of %d: %s", i + 1, len(labs), lab.title)
            text = await self.service.call_once(prompt, lab.content, token, on_status)
            processed.append(ParsedLab(title=lab.title, content=text))
            self.processed_labs = list(processed)
            if i < len(labs) - 1:
                await self._sleep(self.lab_pause, token)

        output = f"Processed {len(processed)} lab(s)."
        return StageResult(3, AgentStatus.DONE, output, labs=list(processed))

    def _export_labs(self) -> StageResult:
        if not self.processed_labs:
            raise WorkflowError("No processed labs to export. Run the formatting agent first.")
        if self.export_dir is None:
            raise WorkflowError("No export directory configured.")
        files = [self._write(safe_filename(lab.title), lab.content) for lab in self.processed_labs]
        output = f"Exported {len(files)} lab(s) successfully."
        return StageResult(4, AgentStatus.DONE, output, labs=list(self.processed_labs), files=files)

    def _write(self, name: str, content: str) -> Path:
        self.export_dir.mkdir(parents=True, exist_ok=True)
        path = self.export_dir / name
        path.write_text(content, encoding="utf-8")
        return path
