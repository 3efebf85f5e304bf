"""LangGraphベースの学習ワークフロー."""

import logging
from typing import TypedDict

from langgraph.graph import END, StateGraph
from langgraph.graph.state import CompiledStateGraph

from src.application.agents.curator import CurationOptions, CuratorAgent
from src.application.agents.generator import GenerationOptions, GeneratorAgent
from src.application.agents.reflector import ReflectionOptions, ReflectorAgent
from src.common.defs.curation import CurationResult
from src.common.defs.insight import ReflectionResult
from src.common.defs.trajectory import Trajectory
from src.components.playbook_store.models import DeltaApplyResult
from src.components.playbook_store.store import PlaybookStore

logger = logging.getLogger(__name__)


class WorkflowState(TypedDict):
    """ワークフローの状態定義."""

    query: str
    trajectory: Trajectory | None
    reflection: ReflectionResult | None
    curation: CurationResult | None
    apply_result: DeltaApplyResult | None


class LearningWorkflow:
    """generate → reflect → curate → apply の学習ループ.

    1つのPlaybookStoreに対して1つのワークフローを構築し、
    同一ストアへの書き込みを直列化する.
    """

    def __init__(  # noqa: PLR0913
        self,
        playbook_store: PlaybookStore,
        generator: GeneratorAgent,
        reflector: ReflectorAgent,
        curator: CuratorAgent,
        generation_options: GenerationOptions | None = None,
        reflection_options: ReflectionOptions | None = None,
        curation_options: CurationOptions | None = None,
    ) -> None:
        """LearningWorkflowを初期化する.

        Args:
            playbook_store: 学習対象のPlaybookストア
            generator: Generatorエージェント
            reflector: Reflectorエージェント
            curator: Curatorエージェント
            generation_options: 生成オプション
            reflection_options: 反復オプション
            curation_options: キュレーションオプション
        """
        self.playbook_store = playbook_store
        self.generator = generator
        self.reflector = reflector
        self.curator = curator
        self.generation_options = generation_options
        self.reflection_options = reflection_options
        self.curation_options = curation_options
        self._graph: CompiledStateGraph | None = None

    def build(self) -> CompiledStateGraph:
        """ワークフローグラフを構築・コンパイルする.

        Returns:
            コンパイル済みStateGraph
        """
        graph = StateGraph(WorkflowState)
        graph.add_node("generate", self._generate)
        graph.add_node("reflect", self._reflect)
        graph.add_node("curate", self._curate)
        graph.add_node("apply", self._apply)
        graph.set_entry_point("generate")
        graph.add_edge("generate", "reflect")
        graph.add_conditional_edges(
            "reflect",
            self._has_insights,
            {"continue": "curate", "end": END},
        )
        graph.add_conditional_edges(
            "curate",
            self._has_operations,
            {"continue": "apply", "end": END},
        )
        graph.add_edge("apply", END)
        return graph.compile()

    def run(self, query: str) -> WorkflowState:
        """1件のクエリで学習ループを実行する.

        Args:
            query: 入力クエリ

        Returns:
            最終状態
        """
        if self._graph is None:
            self._graph = self.build()

        return self._graph.invoke(
            {
                "query": query,
                "trajectory": None,
                "reflection": None,
                "curation": None,
                "apply_result": None,
            }
        )

    def _generate(self, state: WorkflowState) -> dict:
        """応答を生成しTrajectoryを記録するノード."""
        trajectory = self.generator.generate(
            state["query"], self.playbook_store, self.generation_options
        )
        return {"trajectory": trajectory}

    def _reflect(self, state: WorkflowState) -> dict:
        """TrajectoryからInsightsを抽出するノード."""
        reflection = self.reflector.reflect(state["trajectory"], self.reflection_options)
        return {"reflection": reflection}

    def _curate(self, state: WorkflowState) -> dict:
        """InsightsからDelta操作を生成するノード."""
        curation = self.curator.curate(
            state["reflection"].insights, self.playbook_store, self.curation_options
        )
        logger.info("Curation summary: %s", curation.summary)
        return {"curation": curation}

    def _apply(self, state: WorkflowState) -> dict:
        """Delta操作をPlaybookへ適用するノード."""
        result = self.playbook_store.apply_deltas(state["curation"].operations)
        return {"apply_result": result}

    @staticmethod
    def _has_insights(state: WorkflowState) -> str:
        reflection = state["reflection"]
        if reflection is None or not reflection.insights:
            logger.info("No insights extracted, skipping curation")
            return "end"
        return "continue"

    @staticmethod
    def _has_operations(state: WorkflowState) -> str:
        curation = state["curation"]
        if curation is None or not curation.operations:
            logger.info("No delta operations generated, skipping apply")
            return "end"
        return "continue"
