"""保存済みPlaybookの統計とBullet一覧を表示するスクリプト.

Usage:
    python src/scripts/show_playbook.py --context my-project
    python src/scripts/show_playbook.py --context my-project --section Testing
    python src/scripts/show_playbook.py --list
"""

import argparse

from dotenv import load_dotenv

from src.common.config.settings import load_config
from src.components.playbook_store.models import BulletFilter
from src.components.playbook_store.repository import PlaybookRepository


def parse_args() -> argparse.Namespace:
    """コマンドライン引数をパースする."""
    parser = argparse.ArgumentParser(description="Playbookの表示")
    parser.add_argument("--context", default="default", help="コンテキスト名")
    parser.add_argument("--section", default=None, help="表示するセクション")
    parser.add_argument("--list", action="store_true", help="コンテキスト一覧を表示")
    return parser.parse_args()


def main() -> None:
    """メイン関数."""
    args = parse_args()
    load_dotenv()
    config = load_config()
    repository = PlaybookRepository(
        data_dir=config.playbook.data_dir,
        max_size=config.playbook.max_size,
        dedup_threshold=config.playbook.dedup_threshold,
    )

    if args.list:
        for context_id in repository.list_contexts():
            print(context_id)
        return

    store = repository.load(args.context)
    stats = store.stats()

    print(f"Context: {args.context}")
    print(f"Total bullets: {stats.total}")
    print(f"Average helpful: {stats.avg_helpful:.2f}  Average harmful: {stats.avg_harmful:.2f}")
    for section, count in sorted(stats.by_section.items()):
        print(f"  {section}: {count}")
    print()

    for bullet in store.query(BulletFilter(section=args.section)):
        meta = bullet.metadata
        print(
            f"[{bullet.id}] ({bullet.section}) "
            f"+{meta.helpful_count}/-{meta.harmful_count} {bullet.content}"
        )


if __name__ == "__main__":
    main()
