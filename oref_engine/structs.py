from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


# -----------------------------
# Schedules (minute-of-day offsets)
# -----------------------------
@dataclass(frozen=True)
class ScheduleEntry:
    start_minute: int  # minutes since local midnight
    value: float


@dataclass(frozen=True)
class TargetEntry:
    start_minute: int
    low: float  # mg/dL
    high: float  # mg/dL


# -----------------------------
# Profile (mg/dL)
# -----------------------------
@dataclass
class Profile:
    # insulin action
    dia: float = 5.0  # hours
    curve: str = "rapid-acting"
    use_custom_peak_time: bool = False
    insulin_peak_time: Optional[float] = None  # minutes

    # basal / safety limits
    current_basal: float = 1.0  # U/hr
    max_iob: float = 0.0  # U
    max_basal: float = 3.0  # U/hr
    max_daily_basal: Optional[float] = None  # U/hr, highest scheduled rate
    max_daily_safety_multiplier: float = 3.0
    current_basal_safety_multiplier: float = 4.0

    # targets
    min_bg: float = 100.0
    max_bg: float = 120.0
    target_bg: Optional[float] = None

    # sensitivity
    sens: float = 50.0  # ISF, mg/dL per U
    carb_ratio: float = 10.0  # g/U
    autosens_min: float = 0.7
    autosens_max: float = 1.2

    # carbs
    min_5m_carbimpact: float = 8.0  # mg/dL per 5m
    max_cob: float = 120.0  # g
    max_meal_absorption_time: float = 6.0  # hours
    remaining_carbs_cap: float = 90.0  # g
    remaining_carbs_fraction: float = 1.0
    carbs_req_threshold: float = 1.0  # g

    # SMB
    enable_uam: bool = False
    enable_smb_always: bool = False
    enable_smb_with_cob: bool = False
    enable_smb_with_temptarget: bool = False
    enable_smb_after_carbs: bool = False
    enable_smb_high_bg: bool = False
    enable_smb_high_bg_target: float = 110.0
    allow_smb_with_high_temptarget: bool = False
    max_smb_basal_minutes: float = 30.0
    max_uam_smb_basal_minutes: float = 30.0
    smb_interval: float = 3.0  # minutes
    bolus_increment: float = 0.1  # U
    skip_neutral_temps: bool = False

    # temp targets / autosens target adjustments
    temptarget_set: bool = False
    exercise_mode: bool = False
    high_temptarget_raises_sensitivity: bool = False
    low_temptarget_lowers_sensitivity: bool = False
    half_basal_exercise_target: float = 160.0
    sensitivity_raises_target: bool = True
    resistance_lowers_target: bool = False
    adv_target_adjustments: bool = False

    # dynamic ISF
    dynamic_isf: str = "off"  # off | original | logarithmic | sigmoid
    adjustment_factor: float = 0.8
    adjustment_factor_sigmoid: float = 0.5

    # schedules; empty means "use the scalar value"
    basal_schedule: List[ScheduleEntry] = field(default_factory=list)
    isf_schedule: List[ScheduleEntry] = field(default_factory=list)
    carb_ratio_schedule: List[ScheduleEntry] = field(default_factory=list)
    target_schedule: List[TargetEntry] = field(default_factory=list)
    timezone: str = "UTC"


@dataclass
class ResolvedProfile:
    basal: float  # U/hr
    sens: float  # mg/dL per U
    carb_ratio: float  # g/U
    min_bg: float
    max_bg: float


# -----------------------------
# Treatments
# -----------------------------
@dataclass(frozen=True)
class Treatment:
    timestamp: int  # ms
    insulin: float = 0.0  # bolus units
    carbs: float = 0.0  # g
    rate: Optional[float] = None  # temp basal U/hr
    duration: float = 0.0  # temp basal minutes
    event_type: str = ""

    @property
    def is_temp_basal(self) -> bool:
        return self.rate is not None and self.duration > 0

    @property
    def is_bolus(self) -> bool:
        return self.insulin > 0 and not self.is_temp_basal


# -----------------------------
# Glucose (mg/dL)
# -----------------------------
@dataclass(frozen=True)
class GlucoseReading:
    timestamp: int  # ms
    glucose: float  # mg/dL
    noise: float = 0.0


@dataclass
class GlucoseStatus:
    glucose: float  # mg/dL
    delta: float  # 5m delta
    short_avg_delta: float  # ~15m average delta
    long_avg_delta: float  # ~40m average delta
    timestamp: int  # ms
    noise: float = 0.0


# -----------------------------
# IOB (U, U/min)
# -----------------------------
@dataclass
class LastTemp:
    rate: float  # U/hr
    timestamp: int  # ms
    duration: float  # minutes


@dataclass
class IobData:
    time: int  # ms
    iob: float = 0.0  # U
    activity: float = 0.0  # U/min
    basal_iob: float = 0.0
    bolus_iob: float = 0.0
    net_basal_insulin: float = 0.0
    bolus_insulin: float = 0.0
    last_bolus_time: Optional[int] = None
    last_temp: Optional[LastTemp] = None


@dataclass
class IobPair:
    actual: IobData
    zero_temp: IobData


# -----------------------------
# Meal data
# -----------------------------
@dataclass
class MealData:
    carbs: float = 0.0  # g entered within the absorption window
    meal_cob: float = 0.0  # g
    current_deviation: float = 0.0
    max_deviation: float = 0.0
    min_deviation: float = 0.0
    slope_from_max_deviation: float = 0.0
    slope_from_min_deviation: float = 0.0
    all_deviations: List[int] = field(default_factory=list)
    last_carb_time: int = 0  # ms


# -----------------------------
# Autosens result
# -----------------------------
@dataclass
class AutosensResult:
    ratio: float = 1.0
    new_isf: Optional[float] = None
    sens_result: str = ""
    raw_ratio: Optional[float] = None
    deviation_count: int = 0
    excluded_count: int = 0


# -----------------------------
# Pump state
# -----------------------------
@dataclass
class CurrentTemp:
    rate: float = 0.0  # U/hr
    duration: float = 0.0  # minutes remaining


@dataclass
class TddData:
    tdd: float  # insulin over the last 24h (U)
    tdd_average: Optional[float] = None  # multi-day average (U)
    tdd_weighted: Optional[float] = None  # weighted recent average (U)


# -----------------------------
# Predictions (mg/dL)
# -----------------------------
@dataclass
class Predictions:
    iob: List[int] = field(default_factory=list)
    zt: List[int] = field(default_factory=list)
    uam: Optional[List[int]] = None
    cob: Optional[List[int]] = None
    blended: List[int] = field(default_factory=list)


# -----------------------------
# Determine-basal
# -----------------------------
@dataclass
class DetermineBasalInputs:
    glucose_status: Optional[GlucoseStatus]
    current_temp: CurrentTemp
    iob_array: List[IobPair]
    profile: Profile
    autosens: AutosensResult
    meal: MealData
    current_time: int  # ms
    micro_bolus_allowed: bool = False
    flat_bgs_detected: bool = False
    tdd: Optional[TddData] = None
    trace_mode: bool = False


@dataclass
class SafetyClamped:
    field: str
    requested: float
    limit: float

    def describe(self) -> str:
        return f"SafetyClamped {self.field} {self.requested:g} -> {self.limit:g}"


@dataclass
class DetermineBasalResult:
    reason: str = ""
    rate: Optional[float] = None  # U/hr, None = no change
    duration: Optional[float] = None  # minutes
    units: Optional[float] = None  # SMB units
    error: Optional[str] = None

    bg: Optional[float] = None
    tick: Optional[str] = None
    eventual_bg: Optional[float] = None
    target_bg: Optional[float] = None
    insulin_req: Optional[float] = None
    cob: Optional[float] = None
    iob: Optional[float] = None
    sensitivity_ratio: Optional[float] = None
    variable_sens: Optional[float] = None
    threshold: Optional[float] = None
    carbs_req: Optional[float] = None
    carbs_req_within: Optional[float] = None  # minutes
    smb_enabled: Optional[bool] = None
    deliver_at: Optional[int] = None  # ms
    pred_bgs: Optional[Predictions] = None

    clamps: List[SafetyClamped] = field(default_factory=list)
    console_error: List[str] = field(default_factory=list)
    trace: List[tuple] = field(default_factory=list)
