"""
命令行一次性拉取：获取令牌 → 执行一次狩猎查询 → 输出结果

用法:
    python -m hunting_service.fetch -q "DeviceInfo | take 10"
    python -m hunting_service.fetch -f query.kql --format csv -o devices.csv
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from hunting_service.config import settings
from hunting_service.exceptions import HuntingServiceError
from hunting_service.layers.acquisition import AcquisitionLayer
from hunting_service.layers.processing import ProcessingLayer
from hunting_service.layers.token import TokenProvider

logger = logging.getLogger("hunting_service.fetch")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hunting-fetch",
        description="使用客户端凭据获取令牌并执行一次高级狩猎查询",
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("-q", "--query", help="查询语句")
    source.add_argument("-f", "--file", type=Path, help="从文件读取查询语句")
    parser.add_argument("--format", choices=["json", "csv"], default="json")
    parser.add_argument("-o", "--output", type=Path, help="输出文件，默认标准输出")
    return parser


async def fetch(query: str, fmt: str = "json") -> str:
    """执行查询并渲染为指定格式的文本"""
    acquisition = AcquisitionLayer(token_provider=TokenProvider(settings))
    proc = ProcessingLayer()
    result = await acquisition.run_query(query)
    df = proc.normalize(proc.to_frame(result), result.columns)
    if fmt == "csv":
        return proc.to_csv(df)
    return json.dumps(
        {"Schema": [c.model_dump() for c in result.columns], "Results": proc.to_records(df)},
        ensure_ascii=False,
        indent=2,
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.query is not None:
        query = args.query
    else:
        try:
            query = args.file.read_text(encoding="utf-8")
        except OSError as exc:
            logger.error(f"无法读取查询文件 {args.file}: {exc}")
            return 1

    try:
        output = asyncio.run(fetch(query, args.format))
    except (HuntingServiceError, ValueError) as exc:
        logger.error(f"查询失败: {exc}")
        return 1

    if args.output:
        try:
            args.output.write_text(output, encoding="utf-8")
        except OSError as exc:
            logger.error(f"无法写入输出文件 {args.output}: {exc}")
            return 1
        logger.info(f"结果已写入 {args.output}")
    else:
        sys.stdout.write(output)
        if not output.endswith("\n"):
            sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
