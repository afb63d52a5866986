from __future__ import annotations
import argparse
import signal
import sys
from pathlib import Path
from typing import Any, Dict

from .analyzer import RestartAnalyzer
from .config import PRESETS, MonitorConfig, apply_preset, load_config
from .history import JsonHistoryStore, MemoryHistory
from .logger import setup_logging
from .models import Classification, ConfigError, ProcessRecord, Severity, fmt_ts
from .orchestrator import CycleReport, Monitor
from .resolver import home_relative
from .utils import C

SEVERITY_COLOR = {
    Severity.LOW: C.GRAY,
    Severity.MEDIUM: C.YELLOW,
    Severity.HIGH: C.RED,
    Severity.CRITICAL: C.RED,
}


def build_config(args: argparse.Namespace, passive: bool = False) -> MonitorConfig:
    """``passive`` configs never auto-resolve; one-shot commands must not kill as a side effect."""
    cfg: Dict[str, Any] = load_config(getattr(args, "config", None))
    if getattr(args, "preset", None):
        cfg = apply_preset(cfg, args.preset)
    if getattr(args, "ports", None):
        cfg["ports"] = args.ports
    if getattr(args, "auto_resolve", False):
        cfg["auto_resolve"] = True
    if getattr(args, "interval", None):
        cfg["poll_interval"] = args.interval
    if passive:
        cfg["auto_resolve"] = False
    return MonitorConfig.from_config(cfg)


def open_history(config: MonitorConfig):
    return JsonHistoryStore(Path(config.history_file)) if config.history_file else MemoryHistory()


def pretty_row(port: int, proc: ProcessRecord) -> str:
    cpu = f"{proc.cpu_pct:5.1f}" if proc.cpu_pct is not None else "    -"
    mem = f"{proc.mem_pct:5.1f}" if proc.mem_pct is not None else "    -"
    where = home_relative(proc.cwd) if proc.cwd else ""
    group = f"{C.GRAY}{(proc.group or '-')[:10]:<10}{C.RESET}"
    return (f"{C.CYAN}{port:<6}{C.RESET} {proc.pid:<7} {proc.name[:18]:<18} {group} "
            f"{(proc.project or '-')[:16]:<16} {cpu} {mem}  {where}")


def print_table(monitor: Monitor) -> None:
    snapshot = monitor.current_snapshot()
    header = f"{'PORT':<6} {'PID':<7} {'NAME':<18} {'GROUP':<10} {'PROJECT':<16} {'CPU%':>5} {'MEM%':>5}  CWD"
    print(header + "\n" + "-" * len(header))
    if snapshot is None or not snapshot.bindings:
        print(f"{C.GRAY}(no processes on watched ports){C.RESET}")
        return
    for b in snapshot.bindings:
        print(pretty_row(b.port, b.process))
    for c in monitor.conflicts():
        color = SEVERITY_COLOR[c.severity]
        print(f"{color}! {c.conflict_type.value} on port {c.port} ({c.severity.value}){C.RESET}: {c.recommendation}")


def print_report(report: CycleReport) -> None:
    for ev in report.diff.added:
        print(f"{C.GREEN}+{C.RESET} port {ev.port:<6} {ev.process.display_name()} (pid {ev.process.pid})")
    for ev in report.diff.removed:
        print(f"{C.GRAY}-{C.RESET} port {ev.port:<6} {ev.process.display_name()} (pid {ev.process.pid})")
    for c in report.conflicts:
        color = SEVERITY_COLOR[c.severity]
        names = ", ".join(f"{p.name}({p.pid})" for p in c.processes)
        print(f"{color}! {c.conflict_type.value}{C.RESET} port {c.port}: {names}")
    for r in report.kills:
        color = C.GREEN if r.ok else C.RED
        print(f"{color}x{C.RESET} pid {r.request.target.pid} on port {r.request.port}: {r.reason()}")
    for r in report.restarts:
        print(f"{C.YELLOW}~{C.RESET} {r.process_name} restarted on port {r.port} after {r.gap:.1f}s")


def cmd_watch(args: argparse.Namespace) -> None:
    config = build_config(args)
    monitor = Monitor(config)
    monitor.add_listener(print_report)

    def handle_signal(signum, frame):
        print(f"\nReceived signal {signum}, shutting down...", file=sys.stderr)
        monitor.request_stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)
    monitor.start(background=False)
    print(f"Watching {'all ports' if config.watch_all else f'{len(config.watch_ports)} port(s)'}, "
          f"every {config.poll_interval:g}s; {monitor.filter.stats().describe()}", file=sys.stderr)
    try:
        monitor.run()
    finally:
        monitor.stop()


def cmd_list(args: argparse.Namespace) -> None:
    monitor = Monitor(build_config(args, passive=True))
    monitor.run_cycle()
    print_table(monitor)
    print(f"\n{monitor.status().text}")


def cmd_kill(args: argparse.Namespace) -> None:
    monitor = Monitor(build_config(args, passive=True))
    monitor.run_cycle()
    try:
        result = monitor.kill(args.pid, args.start_time)
    finally:
        monitor.terminator.shutdown(0)
    color = C.GREEN if result.ok else C.RED
    print(f"{color}{result.reason()}{C.RESET}: pid {args.pid} "
          f"({result.attempts} attempt(s), signals: {', '.join(result.signals_sent) or 'none'})")
    if result.detail:
        print(result.detail, file=sys.stderr)
    if not result.ok:
        sys.exit(1)


def cmd_history(args: argparse.Namespace) -> None:
    history = open_history(build_config(args))
    records = history.by_group(args.group) if args.group else history.all()
    if args.project:
        records = [r for r in records if r.project == args.project]
    records = records[-args.limit:] if args.limit > 0 else []
    if not records:
        print("No kill history.")
        return
    for r in reversed(records):
        outcome = r.outcome if r.outcome == "success" else f"{C.RED}{r.outcome}{C.RESET}"
        print(f"{fmt_ts(r.killed_at)}  port {r.port:<6} pid {r.pid:<7} {r.display_name():<30} "
              f"{r.killed_by:<5} {outcome}")


def cmd_offenders(args: argparse.Namespace) -> None:
    config = build_config(args)
    analyzer = RestartAnalyzer(config.analyzer, open_history(config))
    offenders = analyzer.offenders(args.min_kills)
    if not offenders:
        print("No frequent offenders.")
        return
    print(f"{'KILLS':>5}  {'PORT':<6} {'PROCESS':<20} {'LAST KILLED':<20} PROJECT")
    for o in offenders:
        print(f"{o.kill_count:>5}  {o.port:<6} {o.process_name[:20]:<20} {fmt_ts(o.last_killed):<20} "
              f"{o.project or '-'}")


def cmd_analyze(args: argparse.Namespace) -> None:
    config = build_config(args)
    analyzer = RestartAnalyzer(config.analyzer, open_history(config))
    stats = analyzer.statistics()
    print(f"Total kills: {stats.total_kills}  processes: {stats.unique_processes}  "
          f"ports: {stats.unique_ports}  projects: {stats.unique_projects}  "
          f"avg/day: {stats.average_kills_per_day:.1f}")
    if stats.most_killed_process:
        print(f"Most killed: {stats.most_killed_process[0]} ({stats.most_killed_process[1]}x)")
    tp = analyzer.time_patterns()
    if tp.peak_hour is not None:
        print(f"Peak hour: {tp.peak_hour}:00  peak day: {tp.peak_day}")

    analysis = analyzer.root_cause()
    print(f"\n{analysis.summary}")
    for c in analysis.conflicts:
        color = SEVERITY_COLOR[c.severity]
        print(f"{color}! {c.conflict_type.value}{C.RESET} port {c.port}: {', '.join(c.processes)}")
        print(f"    {c.recommendation}")
    for p in analysis.patterns:
        print(f"{C.CYAN}~ {p.pattern_type.value}{C.RESET} ({p.confidence:.0%}) {p.description}; {p.frequency}")
        print(f"    {p.recommendation}")
    for r in analysis.recommendations:
        print(f"{C.YELLOW}> {r.title}{C.RESET}: {r.description}. {r.action}.")

    suggestions = analyzer.ignore_suggestions()
    if suggestions:
        print("\nSuggested ignores:")
        if suggestions.ports:
            print(f"  ignore_ports: {suggestions.ports}")
        if suggestions.processes:
            print(f"  ignore_processes: {suggestions.processes}")
        if suggestions.groups:
            print(f"  ignore_groups: {suggestions.groups}")


def cmd_audit(args: argparse.Namespace) -> None:
    config = build_config(args, passive=True)
    monitor = Monitor(config)
    monitor.run_cycle()
    baseline = Path(args.baseline or config.auditor.baseline_file or "")
    compare = baseline if args.compare and baseline.name else None
    report = monitor.audit(compare)
    for f in report.findings:
        if args.suspicious_only and f.classification != Classification.SUSPICIOUS:
            continue
        color = SEVERITY_COLOR[f.risk_level]
        reason = f.suspicion_reason.value if f.suspicion_reason else ""
        print(f"{color}{f.risk_level.value:<8}{C.RESET} {f.classification.value:<10} port {f.port:<6} "
              f"{f.process.name[:18]:<18} {f.service_type or '':<10} {reason:<18} "
              f"{(f.binary_hash or '-')[:12]}")
    print(f"\nSecurity score: {report.score:.0f}/100 ({report.total_ports} port(s))")
    for r in report.recommendations:
        print(f"{SEVERITY_COLOR[r.priority]}> {r.title}{C.RESET}: {r.description} (ports {r.affected_ports})")
    if report.baseline is not None:
        b = report.baseline
        print(f"\nBaseline {b.baseline_file}: {len(b.new)} new, {len(b.removed)} removed, {len(b.changed)} changed")
        for ch in b.changed:
            print(f"  port {ch.port}: {ch.change_type}")
    if args.save_baseline and baseline.name:
        monitor.auditor.save_baseline(report, baseline)
        print(f"Saved baseline to {baseline}", file=sys.stderr)
    monitor.terminator.shutdown(0)


def cmd_clear_history(args: argparse.Namespace) -> None:
    if not args.yes:
        print("Refusing to clear history without --yes", file=sys.stderr)
        sys.exit(2)
    removed = open_history(build_config(args)).clear()
    print(f"Cleared {removed} history record(s)")


def cmd_presets(args: argparse.Namespace) -> None:
    for name, preset in PRESETS.items():
        print(f"{C.CYAN}{name:<10}{C.RESET} {preset['description']}")
        print(f"{'':<10} ports: {preset['ports']}")
        if preset.get("ignore_processes"):
            print(f"{'':<10} ignores: {', '.join(preset['ignore_processes'])}")


def _common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", type=str, help="Config YAML")
    p.add_argument("--preset", choices=sorted(PRESETS), help="Apply a named preset")
    p.add_argument("--ports", type=str, help="Override: ports to watch ('all', '3000,8080', '3000-3010')")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="portwatch - port monitor, conflict guard and kill history")
    sub = ap.add_subparsers(dest="cmd", required=True)

    p_watch = sub.add_parser("watch", help="Run the monitor and print events")
    _common(p_watch)
    p_watch.add_argument("--interval", type=float, help="Override: poll interval in seconds")
    p_watch.add_argument("--auto-resolve", action="store_true", help="Terminate losing processes in conflicts")
    p_watch.set_defaults(func=cmd_watch)

    p_list = sub.add_parser("list", help="Scan once and print the processes on watched ports")
    _common(p_list)
    p_list.set_defaults(func=cmd_list)

    p_kill = sub.add_parser("kill", help="Terminate one process")
    _common(p_kill)
    p_kill.add_argument("--pid", type=int, required=True)
    p_kill.add_argument("--start-time", type=float, help="Only kill this incarnation of the pid")
    p_kill.set_defaults(func=cmd_kill)

    p_hist = sub.add_parser("history", help="Show kill history")
    _common(p_hist)
    p_hist.add_argument("--limit", type=int, default=20)
    p_hist.add_argument("--group", type=str)
    p_hist.add_argument("--project", type=str)
    p_hist.set_defaults(func=cmd_history)

    p_off = sub.add_parser("offenders", help="Rank processes by how often they were killed")
    _common(p_off)
    p_off.add_argument("--min-kills", type=int, help="Override: minimum kills to be listed")
    p_off.set_defaults(func=cmd_offenders)

    p_an = sub.add_parser("analyze", help="Statistics, patterns and recommendations from history")
    _common(p_an)
    p_an.set_defaults(func=cmd_analyze)

    p_audit = sub.add_parser("audit", help="Classify the binaries holding ports")
    _common(p_audit)
    p_audit.add_argument("--suspicious-only", action="store_true")
    p_audit.add_argument("--baseline", type=str, help="Baseline file")
    p_audit.add_argument("--compare", action="store_true", help="Compare with the baseline")
    p_audit.add_argument("--save-baseline", action="store_true", help="Write this audit as the new baseline")
    p_audit.set_defaults(func=cmd_audit)

    p_clear = sub.add_parser("clear-history", help="Delete every history record")
    _common(p_clear)
    p_clear.add_argument("--yes", action="store_true", help="Confirm the irreversible delete")
    p_clear.set_defaults(func=cmd_clear_history)

    p_presets = sub.add_parser("presets", help="List the built-in presets")
    p_presets.set_defaults(func=cmd_presets)

    return ap


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(console=args.cmd == "watch")
    try:
        args.func(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)
