"""学習ループ (Generate → Reflect → Curate → Apply) の実行スクリプト.

指定コンテキストのPlaybookを読み込み、クエリごとに学習ループを実行して
更新後のPlaybookを保存する.

Usage:
    # クエリを直接指定
    python src/scripts/run_workflow.py "How do I sort a list?" "How do I read a file?"

    # ファイルから1行1クエリで読み込み
    python src/scripts/run_workflow.py --queries-file queries.txt --context my-project

    # 生成のみ (Playbookは更新しない)
    python src/scripts/run_workflow.py --mode generate "How do I sort a list?"
"""

import argparse
import sys
from collections.abc import Callable
from pathlib import Path

from dotenv import load_dotenv

from src.application.agents.curator import CurationOptions
from src.application.agents.generator import GenerationOptions
from src.application.agents.reflector import ReflectionOptions
from src.application.workflows.learning_workflow import WorkflowState
from src.common.config.settings import AppConfig, load_config
from src.common.defs.trajectory import Trajectory
from src.common.di.container import Container
from src.common.lib.errors import AceError
from src.common.lib.logging import getLogger
from src.components.llm_client.gateway import resolve_embedder

logger = getLogger(__name__)

DEFAULT_CONTEXT = "default"


def parse_args() -> argparse.Namespace:
    """コマンドライン引数をパースする."""
    parser = argparse.ArgumentParser(
        description="Playbook学習ループの実行",
    )
    parser.add_argument("queries", nargs="*", help="実行するクエリ")
    parser.add_argument(
        "--queries-file",
        type=Path,
        default=None,
        help="1行1クエリのテキストファイル",
    )
    parser.add_argument(
        "--context",
        default=DEFAULT_CONTEXT,
        help=f"Playbookのコンテキスト名 (default: {DEFAULT_CONTEXT})",
    )
    parser.add_argument(
        "--mode",
        choices=["full", "generate"],
        default="full",
        help="full: 学習ループ全体, generate: 生成とフィードバックのみ (default: full)",
    )
    parser.add_argument(
        "--section",
        action="append",
        default=[],
        dest="priority_sections",
        help="優先するセクション (複数指定可)",
    )
    parser.add_argument(
        "--thinking",
        action="store_true",
        help="Reflectorで段階的な思考を促す",
    )
    return parser.parse_args()


def setup() -> tuple[Container, AppConfig]:
    """DIコンテナを初期化して返す."""
    load_dotenv()
    config = load_config()
    container = Container()
    container.config.from_dict(config.model_dump())
    return container, config


def collect_queries(args: argparse.Namespace) -> list[str]:
    """引数とファイルからクエリを集める. 空行は無視する."""
    queries = [q for q in args.queries if q.strip()]
    if args.queries_file is not None:
        lines = args.queries_file.read_text(encoding="utf-8").splitlines()
        queries.extend(line.strip() for line in lines if line.strip())
    return queries


def run_queries(queries: list[str], handle: Callable[[str], None]) -> int:
    """クエリを順番に処理する. 失敗したクエリはログに記録して次へ進む.

    Args:
        queries: 処理するクエリ
        handle: 1件のクエリを処理する関数

    Returns:
        失敗したクエリ数
    """
    failures = 0
    for i, query in enumerate(queries, 1):
        logger.info("=== [%d/%d] %s ===", i, len(queries), query[:60])
        try:
            handle(query)
        except AceError:
            failures += 1
            logger.exception("Query %d failed, continuing with the next one", i)
    return failures


def log_trajectory(trajectory: Trajectory) -> None:
    """生成結果の概要をログに出力する."""
    logger.info("  Response: %s", trajectory.response[:80])
    logger.info(
        "  Bullets: used=%d helpful=%d harmful=%d",
        len(trajectory.bullets_used),
        len(trajectory.bullets_helpful),
        len(trajectory.bullets_harmful),
    )


def log_state(state: WorkflowState) -> None:
    """学習ループの最終状態の概要をログに出力する."""
    reflection = state["reflection"]
    applied = state["apply_result"]
    logger.info(
        "  Reflection: insights=%d iterations=%d quality=%.2f",
        len(reflection.insights) if reflection else 0,
        reflection.iterations if reflection else 0,
        reflection.quality_score if reflection else 0.0,
    )
    if applied is not None:
        logger.info(
            "  Applied: added=%d updated=%d deleted=%d errors=%d",
            applied.added,
            applied.updated,
            applied.deleted,
            applied.errors,
        )


def main() -> None:
    """メイン関数."""
    args = parse_args()
    queries = collect_queries(args)
    if not queries:
        logger.error("No queries given")
        sys.exit(2)

    try:
        container, config = setup()
        gateway = container.gateway()
        repository = container.playbook_repository()
        store = repository.load(args.context, embedder=resolve_embedder(gateway))
    except AceError as e:
        logger.exception("Workflow setup failed: %s", e)
        sys.exit(1)
    logger.info("Loaded context '%s' with %d bullets", args.context, store.count())

    generation_options = GenerationOptions(
        max_bullets=config.generator.max_bullets,
        priority_sections=args.priority_sections,
    )

    try:
        if args.mode == "generate":
            generator = container.generator_agent()
            failures = run_queries(
                queries,
                lambda query: log_trajectory(
                    generator.generate(query, store, generation_options)
                ),
            )
        else:
            workflow = container.learning_workflow(
                playbook_store=store,
                generation_options=generation_options,
                reflection_options=ReflectionOptions(thinking_mode=args.thinking),
                curation_options=CurationOptions(),
            )
            failures = run_queries(queries, lambda query: log_state(workflow.run(query)))
    finally:
        repository.save(args.context, store)

    if failures:
        logger.error("%d of %d queries failed", failures, len(queries))
        sys.exit(1)


if __name__ == "__main__":
    main()
