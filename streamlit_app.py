from __future__ import annotations

import asyncio
from pathlib import Path

import streamlit as st

from route_guard.alerts import AlertEscalator
from route_guard.config import EngineParams
from route_guard.csv_io import load_trace_points, split_journeys
from route_guard.models import DEFAULT_TZ, Severity
from route_guard.notify import LogNotifier
from route_guard.session import JourneyMonitor
from route_guard.store import JsonStore
from route_guard.timeutils import dt_from_epoch_ms, format_distance, format_duration


def _when(epoch_ms: int | None, tz_name: str) -> str:
    if epoch_ms is None:
        return "-"
    return dt_from_epoch_ms(epoch_ms, tz_name).isoformat(sep=" ", timespec="seconds")


async def _snapshot(store_path: str) -> dict[str, list]:
    store = JsonStore(store_path)
    store.load()
    return {
        "routes": await store.list_routes(),
        "journeys": await store.list_journeys(),
        "deviations": await store.list_deviations(),
        "alerts": await store.list_alerts(),
        "contacts": await store.list_contacts(),
    }


@st.cache_data(show_spinner=False)
def _load_snapshot(store_path: str, mtime: float, journal_mtime: float) -> dict[str, list]:
    _ = (mtime, journal_mtime)  # part of cache key so updated files reload automatically
    return asyncio.run(_snapshot(store_path))


async def _replay(
    csv_path: str,
    store_path: str,
    params: EngineParams,
    route_id: int | None,
    severity: Severity,
) -> int:
    points, _ = load_trace_points(csv_path)
    store = JsonStore(store_path)
    store.load()
    store.ensure_persistent_files()
    escalator = AlertEscalator(store, LogNotifier(), params)
    monitor = JourneyMonitor(store, escalator, params, severity=severity)
    journeys = split_journeys(points, 30 * 60.0)
    try:
        for trace in journeys:
            await monitor.start(trace[0], route_id=route_id)
            for pt in trace[1:]:
                monitor.submit(pt)
            await monitor.drain()
            await monitor.stop()
    finally:
        await escalator.aclose()
        store.flush()
    return len(journeys)


def _mtime(p: Path) -> float:
    return p.stat().st_mtime if p.exists() else 0.0


def main() -> None:
    st.set_page_config(page_title="Route Guard：常用路线与偏离告警", layout="wide")
    st.title("Route Guard：常用路线学习与偏离告警")

    with st.sidebar:
        st.subheader("数据与时区")
        tz_name = st.text_input("时区（IANA）", value=DEFAULT_TZ)
        store_path = st.text_input("数据文件（JSON）", value="route_guard.json")
        csv_path = st.text_input("Path.csv 路径", value="Path.csv")

        with st.expander("高级参数（通常不用改）", expanded=False):
            similarity_threshold = st.number_input("similarity_threshold（默认 0.8）", value=0.8, step=0.05)
            deviation_threshold_m = st.number_input("deviation_threshold_m（默认 100m）", value=100.0, step=10.0)
            min_route_distance_m = st.number_input("min_route_distance_m（默认 500m）", value=500.0, step=50.0)
            route_id = st.number_input("回放时预期路线 id（0 = 只学习）", value=0, step=1, min_value=0)
            severity = st.selectbox("告警级别", [s.value for s in Severity], index=1)

        if st.button("一键回放 Path.csv", type="primary", use_container_width=True):
            pcsv = Path(csv_path)
            if not pcsv.exists():
                st.error(f"找不到文件：{csv_path!r}")
            else:
                params = EngineParams(
                    similarity_threshold=float(similarity_threshold),
                    deviation_threshold_m=float(deviation_threshold_m),
                    min_route_distance_m=float(min_route_distance_m),
                    tz_name=tz_name,
                )
                with st.spinner("正在回放轨迹、学习路线并检测偏离 ..."):
                    n = asyncio.run(
                        _replay(csv_path, store_path, params, int(route_id) or None, Severity(severity))
                    )
                st.success(f"已回放 {n} 段行程，结果写入：{store_path}")

    p = Path(store_path)
    journal = p.with_name(f"{p.stem}.journal.jsonl")
    if not p.exists() and not journal.exists():
        st.error(f"找不到文件：{store_path!r}。你可以点击左侧“一键回放 Path.csv”，或填写正确路径。")
        return

    try:
        data = _load_snapshot(store_path, _mtime(p), _mtime(journal))
    except Exception as exc:
        st.exception(exc)
        return

    routes, journeys = data["routes"], data["journeys"]
    deviations, alerts = data["deviations"], data["alerts"]

    st.subheader("汇总")
    c1, c2, c3, c4 = st.columns(4)
    c1.metric("已学习路线", str(len(routes)))
    c2.metric("行程数", str(len(journeys)))
    c3.metric("偏离次数", str(len(deviations)))
    c4.metric("联系人告警", str(len(alerts)))

    st.subheader("路线（按最近更新排序）")
    st.dataframe(
        [
            {
                "route_id": r.id,
                "name": r.name,
                "confidence": round(r.confidence_score, 2),
                "level": r.confidence_label,
                "times_traveled": r.times_traveled,
                "avg_duration": format_duration(r.avg_duration),
                "points": len(r.points),
                "updated_at": _when(r.updated_at, tz_name),
            }
            for r in routes
        ],
        use_container_width=True,
        height=280,
    )

    if routes:
        picked = st.selectbox("地图查看路线", [r.id for r in routes], format_func=lambda i: f"#{i}")
        route = next(r for r in routes if r.id == picked)
        st.map([{"lat": pt.latitude, "lon": pt.longitude} for pt in route.points])

    with st.expander("行程明细", expanded=False):
        st.dataframe(
            [
                {
                    "journey_id": j.id,
                    "start_time": _when(j.start_time, tz_name),
                    "end_time": _when(j.end_time, tz_name),
                    "distance": format_distance(j.distance),
                    "mode": j.transportation_mode.value,
                    "route_id": j.matched_route_id,
                    "has_deviation": j.has_deviation,
                }
                for j in journeys
            ],
            use_container_width=True,
            height=360,
        )

    st.subheader("偏离记录")
    alerts_by_deviation: dict[int, int] = {}
    for a in alerts:
        alerts_by_deviation[a.deviation_id] = alerts_by_deviation.get(a.deviation_id, 0) + 1
    st.dataframe(
        [
            {
                "deviation_id": d.id,
                "journey_id": d.journey_id,
                "route_id": d.route_id,
                "time": _when(d.timestamp, tz_name),
                "distance": format_distance(d.distance),
                "state": d.state.value,
                "response": d.user_response.value if d.user_response else "-",
                "contact_alerts": alerts_by_deviation.get(d.id, 0),
            }
            for d in sorted(deviations, key=lambda d: d.timestamp, reverse=True)
        ],
        use_container_width=True,
        height=420,
    )

    st.caption(
        "说明：回放时不会真的发送短信/邮件，通知只写入日志；未回应的 medium 偏离在回放结束时会取消升级计时器。"
    )


if __name__ == "__main__":
    main()
