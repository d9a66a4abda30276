"""配置加载模块 - 从环境变量和 .env 文件加载配置。"""

import json
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RunMode(str, Enum):
    """运行模式枚举。"""

    PAPER = "paper"  # 纸交易
    LIVE = "live"  # 实盘


class AutonomyMode(str, Enum):
    """执行自主程度枚举。"""

    MANUAL = "manual"  # 仅展示，不自动下单
    SEMI_AUTONOMOUS = "semi_autonomous"
    AUTONOMOUS = "autonomous"


class LogFormat(str, Enum):
    """日志格式枚举。"""

    JSON = "json"
    CONSOLE = "console"


class EVThresholds(BaseModel):
    """期望值分档阈值（reject < display < auto_trade）。"""

    reject: float
    display: float
    auto_trade: float

    @model_validator(mode="after")
    def check_order(self) -> "EVThresholds":
        if not self.reject < self.display < self.auto_trade:
            raise ValueError("ev_thresholds_must_increase: reject < display < auto_trade")
        return self


class TakeProfitLevel(BaseModel):
    """分批止盈档位：距入场价的百分比与平仓比例。"""

    gain_pct: float = Field(gt=0.0)
    size_pct: float = Field(gt=0.0, le=100.0)


class Settings(BaseSettings):
    """系统配置设置。

    从环境变量和 .env 文件加载配置。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== 运行模式 ====================
    mode: RunMode = Field(default=RunMode.PAPER, description="运行模式: paper 或 live")
    autonomy: AutonomyMode = Field(
        default=AutonomyMode.SEMI_AUTONOMOUS,
        description="自主模式: manual / semi_autonomous / autonomous",
    )

    # ==================== 交易所 (Venue) ====================
    venue_base_url: str = Field(
        default="https://api.hyperliquid.xyz",
        description="交易所 API 地址",
    )
    venue_account_address: str = Field(default="", description="账户地址")
    venue_wallet_key: str = Field(default="", description="签名钱包私钥")
    venue_timeout: int = Field(default=10, ge=1, le=120, description="请求超时（秒）")

    # ==================== 资产池与打分 ====================
    top_n: int = Field(default=5, ge=1, le=100, description="排名前 N 的资产池")
    ranking_buffer: int = Field(default=2, ge=0, le=50, description="排名缓冲区")
    ranking_confirmation_cycles: int = Field(
        default=2,
        ge=1,
        le=20,
        description="排名跌出后确认的周期数",
    )
    scoring_workers: int = Field(default=4, ge=1, le=32, description="并行打分线程数")

    # ==================== 期望值阈值（按自主模式） ====================
    ev_reject_manual: float = Field(default=-1.0, description="manual 模式拒绝阈值")
    ev_display_manual: float = Field(default=0.2, description="manual 模式展示阈值")
    ev_auto_trade_manual: float = Field(default=0.5, description="manual 模式自动交易阈值")
    ev_reject_semi_autonomous: float = Field(default=-1.0)
    ev_display_semi_autonomous: float = Field(default=0.2)
    ev_auto_trade_semi_autonomous: float = Field(default=1.0)
    ev_reject_autonomous: float = Field(default=-1.0)
    ev_display_autonomous: float = Field(default=0.2)
    ev_auto_trade_autonomous: float = Field(default=0.5)

    # ==================== 资金与仓位 ====================
    initial_equity: float = Field(default=10_000.0, gt=0.0, description="初始资金")
    allocation_strategy: Literal[
        "equal", "confidence_weighted", "risk_parity", "kelly"
    ] = Field(default="confidence_weighted", description="资金分配策略")
    max_position_size_pct: float = Field(
        default=20.0,
        ge=1.0,
        le=100.0,
        description="单仓位最大资金占比（百分比）",
    )
    reserve_capital_pct: float = Field(
        default=10.0,
        ge=0.0,
        le=90.0,
        description="保留资金比例（百分比）",
    )
    default_leverage: float = Field(default=3.0, ge=1.0, le=50.0, description="默认杠杆")
    risk_per_trade_pct: float = Field(
        default=1.0,
        ge=0.1,
        le=5.0,
        description="单笔最大风险（账户净值百分比）",
    )
    max_open_positions: int = Field(default=3, ge=1, le=50, description="最大同时持仓数")
    stop_loss_atr_multiplier: float = Field(
        default=2.0,
        ge=0.5,
        le=5.0,
        description="止损 ATR 倍数",
    )
    default_stop_pct: float = Field(
        default=3.0,
        gt=0.0,
        le=20.0,
        description="无 ATR 时的止损距离（百分比）",
    )
    reward_risk_ratio: float = Field(default=2.0, gt=0.0, le=10.0, description="盈亏比")
    live_min_confidence: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="实盘下单最低置信度",
    )

    # ==================== 出场规则 ====================
    stop_loss_enabled: bool = Field(default=True)
    take_profit_enabled: bool = Field(default=True)
    trailing_stop_enabled: bool = Field(default=True)
    signal_reversal_enabled: bool = Field(default=True)
    ranking_drop_enabled: bool = Field(default=False)
    indicator_exit_enabled: bool = Field(default=False)
    take_profit_levels_json: str = Field(
        default="",
        description='分批止盈 JSON，例如 [{"gain_pct": 2, "size_pct": 50}]',
    )
    move_stop_to_breakeven: bool = Field(default=True, description="首档止盈后止损移至保本")
    trailing_activate_pct: float = Field(
        default=1.0,
        ge=0.0,
        le=50.0,
        description="移动止损激活所需浮盈（百分比）",
    )
    trailing_distance_pct: float = Field(
        default=5.0,
        gt=0.0,
        le=50.0,
        description="移动止损回撤距离（百分比）",
    )
    reversal_confidence_threshold: float = Field(
        default=0.65,
        ge=0.0,
        le=1.0,
        description="反向信号平仓所需置信度",
    )
    ranking_exit_size_pct: float = Field(default=50.0, ge=1.0, le=100.0)
    indicator_exit_size_pct: float = Field(default=50.0, ge=1.0, le=100.0)
    indicator_require_confirmation: bool = Field(default=True)
    indicator_rsi_exit_long: float = Field(default=75.0, ge=50.0, le=100.0)
    indicator_rsi_exit_short: float = Field(default=25.0, ge=0.0, le=50.0)

    # ==================== 熔断 ====================
    max_consecutive_losses: int = Field(
        default=3,
        ge=1,
        le=20,
        description="连续亏损熔断阈值",
    )
    max_drawdown_pct: float = Field(
        default=10.0,
        ge=1.0,
        le=90.0,
        description="最大回撤熔断阈值（百分比）",
    )
    daily_loss_limit_pct: float = Field(
        default=5.0,
        ge=0.5,
        le=50.0,
        description="单日亏损熔断阈值（百分比）",
    )
    max_api_error_rate: float = Field(
        default=0.5,
        gt=0.0,
        le=1.0,
        description="API 错误率熔断阈值",
    )
    min_api_calls: int = Field(default=10, ge=1, description="计算错误率所需的最少调用次数")

    # ==================== 执行与重试 ====================
    paper_slippage_bps: float = Field(default=0.0, ge=0.0, le=100.0, description="纸交易滑点")
    order_fill_timeout_sec: float = Field(default=30.0, gt=0.0, le=600.0)
    fill_poll_interval_sec: float = Field(default=2.0, gt=0.0, le=60.0)
    retry_on_timeout: bool = Field(default=True)
    max_retries: int = Field(default=3, ge=0, le=20, description="下单最大重试次数")
    slippage_start_pct: float = Field(default=0.01, gt=0.0, le=8.0)
    slippage_max_pct: float = Field(default=8.0, gt=0.0, le=20.0)
    slippage_escalation: Literal["geometric", "linear"] = Field(default="geometric")
    slippage_step: float = Field(
        default=2.0,
        gt=0.0,
        description="几何模式为倍数，线性模式为每次增加的百分比",
    )
    max_price_deviation_pct: float = Field(
        default=1.0,
        gt=0.0,
        le=20.0,
        description="重新下单前允许的价格偏离（百分比）",
    )
    request_max_attempts: int = Field(default=3, ge=1, le=10, description="查询类请求重试次数")
    request_backoff_min: float = Field(default=1.0, ge=0.0)
    request_backoff_max: float = Field(default=8.0, ge=0.0)

    # ==================== 对账 ====================
    reconcile_interval_min: int = Field(default=15, ge=1, le=1440, description="对账间隔（分钟）")
    position_qty_tolerance: float = Field(default=0.001, ge=0.0, description="数量差异容忍度")

    # ==================== 日志配置 ====================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="日志级别",
    )
    log_format: LogFormat = Field(
        default=LogFormat.CONSOLE,
        description="日志输出格式",
    )

    # ==================== 数据存储 ====================
    journal_dir: Path = Field(
        default=Path("data/journal"),
        description="交易日志存储目录",
    )
    state_file: Path = Field(
        default=Path("data/state/cycle_state.json"),
        description="周期状态持久化文件",
    )
    snapshot_file: Path = Field(
        default=Path("data/snapshots.json"),
        description="指标快照输入文件",
    )

    @field_validator("journal_dir", "state_file", "snapshot_file", mode="before")
    @classmethod
    def parse_path(cls, v: str | Path) -> Path:
        """将字符串转换为 Path 对象。"""
        return Path(v) if isinstance(v, str) else v

    @model_validator(mode="after")
    def check_thresholds(self) -> "Settings":
        """启动时校验各模式的期望值阈值与分批止盈配置。"""
        for autonomy in AutonomyMode:
            self.ev_thresholds(autonomy)
        self.take_profit_levels()
        return self

    def ensure_directories(self) -> None:
        """确保必要的目录存在。"""
        self.journal_dir.mkdir(parents=True, exist_ok=True)
        self.state_file.parent.mkdir(parents=True, exist_ok=True)

    @property
    def is_paper_mode(self) -> bool:
        """是否为纸交易模式。"""
        return self.mode == RunMode.PAPER

    @property
    def is_live_mode(self) -> bool:
        """是否为实盘模式。"""
        return self.mode == RunMode.LIVE

    def ev_thresholds(self, autonomy: AutonomyMode | None = None) -> EVThresholds:
        """返回指定自主模式的期望值阈值。"""
        key = (autonomy or self.autonomy).value
        return EVThresholds(
            reject=getattr(self, f"ev_reject_{key}"),
            display=getattr(self, f"ev_display_{key}"),
            auto_trade=getattr(self, f"ev_auto_trade_{key}"),
        )

    def take_profit_levels(self) -> list[TakeProfitLevel]:
        """解析分批止盈档位，未配置时返回空列表（使用单一止盈价）。"""
        if not self.take_profit_levels_json.strip():
            return []
        raw = json.loads(self.take_profit_levels_json)
        levels = [TakeProfitLevel.model_validate(item) for item in raw]
        if sum(level.size_pct for level in levels) > 100.0 + 1e-9:
            raise ValueError("take_profit_sizes_exceed_100")
        return sorted(levels, key=lambda level: level.gain_pct)

    def validate_for_live(self) -> list[str]:
        """验证实盘模式的必要配置，返回缺失项列表。"""
        missing = []
        if not self.venue_account_address:
            missing.append("VENUE_ACCOUNT_ADDRESS")
        if not self.venue_wallet_key:
            missing.append("VENUE_WALLET_KEY")
        return missing


# 全局配置实例（延迟初始化）
_settings: Settings | None = None


def get_settings() -> Settings:
    """获取全局配置实例。"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """重新加载配置。"""
    global _settings
    _settings = Settings()
    return _settings
