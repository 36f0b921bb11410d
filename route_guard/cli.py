"""Command-line interface for route_guard.

Run:
    python -m route_guard replay --csv Path.csv --store route_guard.json
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from route_guard.alerts import AlertEscalator
from route_guard.config import EngineParams, load_params
from route_guard.csv_io import load_trace_points, split_journeys
from route_guard.models import DEFAULT_TZ, Severity
from route_guard.notify import DEFAULT_ACTION_IDENTIFIER, DEVIATION_ACTIONS, LogNotifier
from route_guard.session import JourneyMonitor
from route_guard.store import JsonStore
from route_guard.timeutils import dt_from_epoch_ms, format_distance, format_duration


def _open_store(path: str) -> JsonStore:
    store = JsonStore(path)
    store.load()
    return store


async def _replay(args: argparse.Namespace) -> int:
    params = load_params(args.params)
    if args.tz:
        params = EngineParams.from_mapping({"tz_name": args.tz}, base=params)
    points, summary = load_trace_points(args.csv)
    print(f"读取：total_rows={summary.rows_total}, parsed={summary.rows_parsed}, skipped={summary.rows_skipped}")

    store = _open_store(args.store)
    store.ensure_persistent_files()
    escalator = AlertEscalator(store, LogNotifier(), params)
    monitor = JourneyMonitor(store, escalator, params, severity=Severity(args.severity))

    journeys = split_journeys(points, args.split_gap_seconds)
    print(f"切分出 {len(journeys)} 段行程（间隔 > {args.split_gap_seconds:.0f}s 即切分）")
    try:
        for trace in journeys:
            journey = await monitor.start(trace[0], route_id=args.route_id)
            for pt in trace[1:]:
                monitor.submit(pt)
            await monitor.drain()
            deviations = list(monitor.deviations)
            result = await monitor.stop()

            start = dt_from_epoch_ms(trace[0].timestamp, params.tz_name)
            line = (
                f"journey={journey.id} start={start.isoformat(sep=' ')} "
                f"points={len(trace)} deviations={len(deviations)}"
            )
            if result is None:
                line += " 分析：太短，未学习"
            elif result.is_new_route:
                line += f" 分析：新路线 route={result.route_id}"
            else:
                line += f" 分析：匹配 route={result.route_id} similarity={result.similarity:.3f}"
            print(line)

        if escalator.pending_timers and args.wait_escalations:
            print(f"等待 {len(escalator.pending_timers)} 个升级计时器（{params.escalation_timeout_s:.0f}s）……")
            await asyncio.sleep(params.escalation_timeout_s + 0.5)
    finally:
        pending = escalator.pending_timers
        if pending:
            print(f"注意：退出时取消了 {len(pending)} 个未触发的升级计时器：{pending}", file=sys.stderr)
        await escalator.aclose()
        store.flush()
    print(f"已保存：{args.store}")
    return 0


async def _routes(args: argparse.Namespace) -> int:
    store = _open_store(args.store)
    routes = await store.list_routes()
    print("### 已学习的路线")
    if not routes:
        print("（无）")
    for r in routes:
        print(
            f"id={r.id} name={r.name!r} confidence={r.confidence_score:.2f}({r.confidence_label}) "
            f"times={r.times_traveled} avg={format_duration(r.avg_duration)} points={len(r.points)}"
        )
    return 0


async def _deviations(args: argparse.Namespace) -> int:
    store = _open_store(args.store)
    deviations = await store.list_deviations(args.journey_id)
    print("### 偏离记录")
    if not deviations:
        print("（无）")
    for d in deviations:
        alerts = await store.list_alerts(d.id)
        when = dt_from_epoch_ms(d.timestamp, args.tz).isoformat(sep=" ")
        response = d.user_response.value if d.user_response else "-"
        print(
            f"id={d.id} journey={d.journey_id} route={d.route_id} time={when} "
            f"distance={format_distance(d.distance)} state={d.state.value} response={response} "
            f"alerts={len(alerts)}"
        )
    return 0


async def _respond(args: argparse.Namespace) -> int:
    params = load_params(args.params)
    store = _open_store(args.store)
    escalator = AlertEscalator(store, LogNotifier(), params)
    state = await escalator.handle_action(args.deviation_id, args.action)
    store.flush()
    print(f"deviation={args.deviation_id} action={args.action} -> {state.value}")
    return 0


async def _contacts(args: argparse.Namespace) -> int:
    store = _open_store(args.store)
    print("### 紧急联系人（按优先级）")
    contacts = await store.list_contacts()
    if not contacts:
        print("（无）")
    for c in contacts:
        flag = "active" if c.is_active else "inactive"
        print(f"id={c.id} name={c.name!r} priority={c.priority} phone={c.phone_number} email={c.email} {flag}")
    return 0


async def _add_contact(args: argparse.Namespace) -> int:
    store = _open_store(args.store)
    contact = await store.create_contact(
        args.name,
        phone_number=args.phone,
        email=args.email,
        relationship=args.relationship,
        priority=args.priority,
        is_active=not args.inactive,
    )
    store.flush()
    print(f"已添加联系人 id={contact.id}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser."""

    p = argparse.ArgumentParser(prog="route_guard")
    p.add_argument("--log-level", type=str, default="INFO", help="日志级别（DEBUG/INFO/WARNING）")
    sub = p.add_subparsers(dest="cmd", required=True)

    def _store_arg(sp: argparse.ArgumentParser) -> None:
        sp.add_argument("--store", type=str, default="route_guard.json", help="数据文件（JSON快照 + journal）")

    p_rep = sub.add_parser("replay", help="把 Path.csv 当作实时轨迹回放：学习路线、检测偏离")
    p_rep.add_argument("--csv", type=str, default="Path.csv", help="输入CSV路径")
    _store_arg(p_rep)
    p_rep.add_argument("--params", type=str, default=None, help="参数覆盖（JSON文件）")
    p_rep.add_argument("--tz", type=str, default=None, help="时区（IANA），用于路线命名和输出")
    p_rep.add_argument(
        "--split-gap-seconds",
        type=float,
        default=30 * 60.0,
        help="相邻采样间隔超过该秒数即切分为新的行程（默认30分钟）",
    )
    p_rep.add_argument(
        "--route-id",
        type=int,
        default=None,
        help="每段行程预期走的路线id；不指定则只学习不做实时偏离检测",
    )
    p_rep.add_argument(
        "--severity",
        type=str,
        default=Severity.MEDIUM.value,
        choices=[s.value for s in Severity],
        help="偏离的告警级别",
    )
    p_rep.add_argument(
        "--wait-escalations",
        action="store_true",
        help="结束前等待升级计时器触发（否则退出时取消）",
    )
    p_rep.set_defaults(func=_replay)

    p_routes = sub.add_parser("routes", help="列出已学习的路线")
    _store_arg(p_routes)
    p_routes.set_defaults(func=_routes)

    p_dev = sub.add_parser("deviations", help="列出偏离记录")
    _store_arg(p_dev)
    p_dev.add_argument("--journey-id", type=int, default=None, help="只看某段行程")
    p_dev.add_argument("--tz", type=str, default=DEFAULT_TZ, help="时区（IANA）")
    p_dev.set_defaults(func=_deviations)

    p_resp = sub.add_parser("respond", help="模拟用户对偏离通知的回应")
    _store_arg(p_resp)
    p_resp.add_argument("--params", type=str, default=None, help="参数覆盖（JSON文件）")
    p_resp.add_argument("--deviation-id", type=int, required=True, help="偏离记录id")
    p_resp.add_argument(
        "--action",
        type=str,
        required=True,
        choices=[*DEVIATION_ACTIONS, DEFAULT_ACTION_IDENTIFIER],
        help="confirm 会立即通知紧急联系人",
    )
    p_resp.set_defaults(func=_respond)

    p_con = sub.add_parser("contacts", help="列出紧急联系人")
    _store_arg(p_con)
    p_con.set_defaults(func=_contacts)

    p_add = sub.add_parser("add-contact", help="添加紧急联系人")
    _store_arg(p_add)
    p_add.add_argument("--name", type=str, required=True)
    p_add.add_argument("--phone", type=str, default=None)
    p_add.add_argument("--email", type=str, default=None)
    p_add.add_argument("--relationship", type=str, default=None)
    p_add.add_argument("--priority", type=int, default=1, help="1 = 最先通知")
    p_add.add_argument("--inactive", action="store_true", help="添加为停用状态")
    p_add.set_defaults(func=_add_contact)

    return p


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""

    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return int(asyncio.run(args.func(args)))


if __name__ == "__main__":
    raise SystemExit(main())
