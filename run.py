#!/usr/bin/env python3
import sys
import argparse

from config.settings import settings
from sentineltrack.errors import SentinelTrackError
from sentineltrack.models import RecordKind


def export(kind: str, path: str) -> int:
    """导出一张表到CSV"""
    from sentineltrack.services import StorageService

    try:
        count = StorageService(config=settings).export_to_csv(RecordKind(kind), path)
    except SentinelTrackError as e:
        print(f"导出失败: {e.message}", file=sys.stderr)
        return 1
    print(f"已导出 {count} 条记录到 {path}")
    return 0


def main():
    """主函数"""
    # 解析命令行参数
    parser = argparse.ArgumentParser(description='SentinelTrack 主机遥测监控服务')
    parser.add_argument('--monitor-only', action='store_true', help='仅启动采集服务，不启动Web服务')
    parser.add_argument('--export', nargs=2, metavar=('KIND', 'PATH'),
                        help=f"导出数据到CSV后退出，KIND 可选: {', '.join(k.value for k in RecordKind)}")
    args = parser.parse_args()

    if args.export:
        kind, path = args.export
        if kind not in {k.value for k in RecordKind}:
            parser.error(f"未知的数据类型: {kind}")
        sys.exit(export(kind, path))

    from sentineltrack.main import SentinelTrackApp

    sentinel = SentinelTrackApp(settings)
    if args.monitor_only:
        # 仅启动采集服务
        sentinel.run_monitor_only()
    else:
        # 启动完整应用
        sentinel.run()


if __name__ in {"__main__", "__mp_main__"}:
    main()
