"""CLI 入口模块 - Signal Cycle Engine 命令行接口。"""

import os
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import NoReturn

import click

from signal_cycle import __version__
from signal_cycle.config import Settings, get_settings
from signal_cycle.data.snapshots import SnapshotFileSource, SnapshotSourceError
from signal_cycle.execution.venue import VenueClient, VenueError
from signal_cycle.journal.store import JournalStore
from signal_cycle.pipeline import build_executor, run_trading_cycle
from signal_cycle.quality.snapshot import normalize_snapshot
from signal_cycle.state.manager import CycleStateManager
from signal_cycle.state.performance import summarize
from signal_cycle.state.store import StateCorruptedError, StateStore
from signal_cycle.utils.logging import get_logger, setup_logging


def _require_live_config(settings: Settings) -> None:
    """实盘模式缺少必要配置时退出（状态码 1）。"""
    if not settings.is_live_mode:
        return
    missing = settings.validate_for_live()
    if missing:
        get_logger("signal_cycle.main").error(
            "missing_required_config",
            missing_keys=missing,
            hint="请在 .env 文件中配置交易所账户地址与签名私钥",
        )
        sys.exit(1)


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Signal Cycle Engine - 信号质量评估与交易周期引擎。

    指标快照 → 信号质量打分 → 期望值分档 → 出场评估 → 状态持久化与执行。
    """
    if version:
        click.echo(f"signal-cycle version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="试运行模式，纸面成交且不写入状态",
)
def once(dry_run: bool) -> None:
    """执行单次交易循环。

    对账 → 打分 → 分档 → 开仓 → 出场 → 熔断检查 → 持久化
    """
    setup_logging()
    logger = get_logger("signal_cycle.main")
    settings = get_settings()

    # 确保目录存在
    settings.ensure_directories()

    logger.info(
        "starting_single_run",
        mode=settings.mode.value,
        autonomy=settings.autonomy.value,
        dry_run=dry_run,
        timestamp=datetime.now().isoformat(),
    )
    _require_live_config(settings)

    try:
        report = run_trading_cycle(settings, dry_run=dry_run)
        logger.info(
            "run_completed",
            status=report.status,
            elapsed_ms=round(report.elapsed_ms, 2),
            signals=len(report.signals_generated),
            rejected=len(report.signals_rejected),
            opened=len(report.opened),
            closed=len(report.closed),
            trimmed=len(report.trimmed),
            failures=len(report.failures),
            warnings=report.warnings,
        )
    except KeyboardInterrupt:
        logger.info("run_interrupted", message="User interrupted")
        sys.exit(0)
    except Exception as e:
        logger.exception("run_failed", error=str(e))
        sys.exit(1)


@cli.command()
@click.option(
    "--interval-min",
    "-i",
    type=int,
    default=15,
    help="循环间隔（分钟）",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="试运行模式，纸面成交且不写入状态",
)
def loop(interval_min: int, dry_run: bool) -> NoReturn:
    """循环执行交易循环。

    每隔指定时间执行一次完整的交易循环。
    使用 Ctrl+C 或 SIGTERM 停止；SIGTERM 会取消正在等待成交的订单轮询。
    """
    setup_logging()
    logger = get_logger("signal_cycle.main")
    settings = get_settings()

    # 确保目录存在
    settings.ensure_directories()

    logger.info(
        "starting_loop",
        mode=settings.mode.value,
        interval_min=interval_min,
        dry_run=dry_run,
    )
    _require_live_config(settings)

    # SIGTERM 设置共享取消事件
    stop_event = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop_event.set())

    iteration = 0
    interval_sec = interval_min * 60

    try:
        while not stop_event.is_set():
            iteration += 1
            logger.info(
                "loop_iteration_start",
                iteration=iteration,
                timestamp=datetime.now().isoformat(),
            )

            try:
                report = run_trading_cycle(settings, dry_run=dry_run, cancel_event=stop_event)
                logger.info(
                    "loop_iteration_completed",
                    iteration=iteration,
                    status=report.status,
                    elapsed_ms=round(report.elapsed_ms, 2),
                    opened=len(report.opened),
                    closed=len(report.closed),
                    failures=len(report.failures),
                    warnings=report.warnings,
                )

            except Exception as e:
                logger.exception(
                    "loop_iteration_failed",
                    iteration=iteration,
                    error=str(e),
                )
                # 继续循环，不因单次失败而退出

            # 等待下一次循环
            logger.debug("waiting_next_iteration", wait_seconds=interval_sec)
            stop_event.wait(interval_sec)

    except KeyboardInterrupt:
        pass
    logger.info(
        "loop_stopped",
        message="Loop stopped",
        total_iterations=iteration,
    )
    sys.exit(0)


@cli.command()
def status() -> None:
    """显示系统状态、配置摘要与持久化的周期状态。"""
    setup_logging()
    settings = get_settings()

    click.echo("=" * 50)
    click.echo("Signal Cycle Engine - Status")
    click.echo("=" * 50)
    click.echo()

    # 运行模式
    mode_marker = "[PAPER]" if settings.is_paper_mode else "[LIVE]"
    mode_text = "Paper Trading" if settings.is_paper_mode else "Live Trading"
    click.echo(f"{mode_marker} Mode: {mode_text}")
    click.echo(f"   Autonomy: {settings.autonomy.value}")
    thresholds = settings.ev_thresholds()
    click.echo(
        f"   EV thresholds: reject {thresholds.reject} / display {thresholds.display}"
        f" / auto-trade {thresholds.auto_trade}"
    )
    click.echo()

    # 交易所配置
    click.echo("[Venue]")
    click.echo(f"   Base URL: {settings.venue_base_url}")
    account_status = "[OK] Configured" if settings.venue_account_address else "[--] Not configured"
    click.echo(f"   Account: {account_status}")
    click.echo()

    # 风控参数
    click.echo("[Risk Parameters]")
    click.echo(f"   Allocation: {settings.allocation_strategy}")
    click.echo(f"   Risk per trade: {settings.risk_per_trade_pct}%")
    click.echo(f"   Max open positions: {settings.max_open_positions}")
    click.echo(f"   Max consecutive losses: {settings.max_consecutive_losses}")
    click.echo(f"   Max drawdown: {settings.max_drawdown_pct}%")
    click.echo(f"   Daily loss limit: {settings.daily_loss_limit_pct}%")
    click.echo()

    # 周期状态
    click.echo("[Cycle State]")
    try:
        state = StateStore(settings.state_file).load()
    except StateCorruptedError as exc:
        click.echo(f"   [ERROR] State file corrupted: {exc}")
        state = None
    if state is None:
        click.echo(f"   No persisted state at {settings.state_file}")
    else:
        breaker = state.circuit_breaker
        click.echo(f"   Cycle: {state.cycle_id} ({state.status}, tick {state.tick_count})")
        click.echo(f"   Circuit breaker: {breaker.status}" + (f" - {breaker.reason}" if breaker.reason else ""))
        click.echo(f"   Needs reconciliation: {'Yes' if state.needs_reconciliation else 'No'}")
        perf = state.performance
        click.echo(
            f"   Equity: {perf.current_equity:.2f} (return {perf.total_return_pct:+.2f}%,"
            f" max drawdown {perf.max_drawdown_pct:.2f}%)"
        )
        summary = summarize(state.trade_history)
        click.echo(
            f"   Trades: {summary['trade_count']} (win rate {summary['win_rate_pct']:.1f}%,"
            f" 30d pnl {summary['rolling_30d']['total_pnl']:+.2f})"
        )
        for asset, position in sorted(state.positions.items()):
            click.echo(
                f"   - {asset} {position.side} {position.quantity:g} @ {position.entry_price:g}"
                f" (stop {position.stop_loss}, target {position.take_profit})"
            )
    click.echo()

    # 验证状态
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            click.echo("[ERROR] Live mode configuration incomplete, missing:")
            for key in missing:
                click.echo(f"   - {key}")
        else:
            click.echo("[OK] Live mode configuration complete")
    else:
        click.echo("[INFO] Paper mode does not require venue credentials")

    click.echo()
    click.echo("=" * 50)


@cli.command()
def check() -> None:
    """运行前自检：快照文件、持久化状态、日志目录与实盘连通性。

    任一检查失败时以状态码 1 退出。
    """
    setup_logging()
    logger = get_logger("signal_cycle.main")
    settings = get_settings()
    settings.ensure_directories()

    click.echo("Running pre-flight checks...")
    click.echo()
    problems: list[str] = []

    # 配置文件
    if Path(".env").exists():
        click.echo("  [OK] .env configuration file exists")
    else:
        click.echo("  [WARN] .env file not found (using defaults)")

    # 指标快照
    source = SnapshotFileSource(settings.snapshot_file)
    try:
        snapshots = source.load()
    except SnapshotSourceError as exc:
        click.echo(f"  [ERROR] Snapshot file unreadable: {exc}")
        problems.append("snapshot_file")
    else:
        normalized = [normalize_snapshot(raw) for raw in snapshots.values()]
        usable = [item for item in normalized if item is not None and item.has_any_indicator()]
        if snapshots:
            click.echo(f"  [OK] Snapshots: {len(snapshots)} assets, {len(usable)} with indicators")
        else:
            click.echo(f"  [WARN] No snapshots at {settings.snapshot_file}")

    # 持久化状态
    try:
        state = StateStore(settings.state_file).load()
    except StateCorruptedError as exc:
        click.echo(f"  [ERROR] State file corrupted: {exc}")
        problems.append("state_file")
    else:
        if state is None:
            click.echo("  [OK] No persisted state (a fresh cycle will start)")
        else:
            click.echo(f"  [OK] State: cycle {state.cycle_id}, {len(state.positions)} open positions")

    # 审计日志目录
    if os.access(settings.journal_dir, os.W_OK):
        recent = JournalStore(settings.journal_dir).load_recent(1)
        last = recent[-1]["timestamp"] if recent else "none"
        click.echo(f"  [OK] Journal directory writable (last event: {last})")
    else:
        click.echo(f"  [ERROR] Journal directory not writable: {settings.journal_dir}")
        problems.append("journal_dir")

    # 实盘：配置与交易所连通性
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            click.echo(f"  [ERROR] Live mode configuration missing: {', '.join(missing)}")
            problems.append("live_config")
        else:
            with VenueClient(settings) as client:
                try:
                    account = client.get_account_state()
                except VenueError as exc:
                    click.echo(f"  [ERROR] Venue unreachable: {exc}")
                    problems.append("venue")
                else:
                    click.echo(
                        f"  [OK] Venue account value {account.account_value:.2f},"
                        f" {len(account.positions)} positions"
                    )

    click.echo()
    logger.info("preflight_check_completed", problems=problems)
    if problems:
        click.echo(f"[ERROR] Pre-flight failed: {', '.join(problems)}")
        sys.exit(1)
    click.echo("[OK] All pre-flight checks passed")


@cli.command("reset-breaker")
def reset_breaker() -> None:
    """手动复位熔断器并写回状态。"""
    setup_logging()
    settings = get_settings()
    settings.ensure_directories()

    manager = CycleStateManager(
        settings,
        StateStore(settings.state_file),
        build_executor(settings, dry_run=True),
    )
    state = manager.initialize()
    previous = state.circuit_breaker.status
    state = manager.reset_circuit_breaker(state)
    manager.persist(state)
    click.echo(f"Circuit breaker: {previous} -> {state.circuit_breaker.status}")


@cli.command()
def reconcile() -> None:
    """从交易所拉取账户状态并对账本地持仓。"""
    setup_logging()
    logger = get_logger("signal_cycle.main")
    settings = get_settings()
    settings.ensure_directories()

    if not settings.venue_account_address:
        logger.error("missing_required_config", missing_keys=["VENUE_ACCOUNT_ADDRESS"])
        sys.exit(1)

    with VenueClient(settings) as client:
        manager = CycleStateManager(
            settings,
            StateStore(settings.state_file),
            build_executor(settings, client=client),
        )
        state = manager.initialize()
        try:
            venue_state = client.get_account_state()
        except VenueError as exc:
            logger.error("reconciliation_failed", error=str(exc))
            sys.exit(1)
        state, diff = manager.reconcile(state, venue_state)
        manager.persist(state)

    click.echo(
        f"Reconciled: {diff.positions_updated} updated, {diff.positions_closed} closed"
    )


# 支持 python -m signal_cycle.main 调用
if __name__ == "__main__":
    cli()
