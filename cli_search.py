from __future__ import annotations
import asyncio
import json
import logging
import sys
from pathlib import Path

import dotenv
dotenv.load_dotenv()

from pinpoint.config import load_config
from pinpoint.pipeline import LocatorPipeline
from pinpoint.utils import EnhancedJSONEncoder

"""
命令行检索：python cli_search.py "Roskilde Algade" [--foreign]
打印排序后的候选、能直接解析出的坐标以及国外地理编码的剩余额度。
"""

async def run(query: str, foreign_only: bool) -> None:
    root = Path(__file__).resolve().parent
    cfg = load_config(root / "data" / "config.default.json")
    pipe = LocatorPipeline.from_config(cfg)
    try:
        ranked = await pipe.search(query, foreign_only=foreign_only)
        for c in ranked:
            print(f"[{c.kind.value:15s}] {c.display_text}")
        if ranked.failed_sources:
            print("Failed sources:", ", ".join(ranked.failed_sources))
        coord = await pipe.locate(query)
        print("Resolved:", json.dumps(coord, cls=EnhancedJSONEncoder, ensure_ascii=False))
        print("Quota:", json.dumps(pipe.quota_snapshot(), cls=EnhancedJSONEncoder, ensure_ascii=False))
    finally:
        await pipe.close()

def main():
    logging.basicConfig(level=logging.WARNING)
    args = [a for a in sys.argv[1:] if a != "--foreign"]
    if not args:
        print("usage: python cli_search.py <query> [--foreign]")
        sys.exit(2)
    asyncio.run(run(" ".join(args), "--foreign" in sys.argv[1:]))

if __name__ == "__main__":
    main()
