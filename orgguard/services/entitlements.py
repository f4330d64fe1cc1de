from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from orgguard.domain.models import StorageAddOn, SubscriptionPlan


UNLIMITED = -1
WARNING_PERCENT = 80
BYTES_PER_GB = 1024**3

INTERVAL_MONTHLY = "monthly"
INTERVAL_ANNUAL = "annual"
BILLING_INTERVALS = (INTERVAL_MONTHLY, INTERVAL_ANNUAL)

FEATURE_AI_TEMPLATES = "ai_templates"
FEATURE_PDF_EXPORT = "pdf_export"
FEATURE_API_ACCESS = "api_access"
FEATURE_CUSTOM_BRANDING = "custom_branding"
FEATURE_PRIORITY_SUPPORT = "priority_support"
FEATURE_WHITE_LABEL = "white_label"
FEATURE_ADVANCED_ANALYTICS = "advanced_analytics"
FEATURE_PHOTOS = "photos"
FEATURE_STARTER_TEMPLATES = "starter_templates"
FEATURE_ALL_FIELD_TYPES = "all_field_types"

FEATURE_KEYS = (
    FEATURE_AI_TEMPLATES,
    FEATURE_PDF_EXPORT,
    FEATURE_API_ACCESS,
    FEATURE_CUSTOM_BRANDING,
    FEATURE_PRIORITY_SUPPORT,
    FEATURE_WHITE_LABEL,
    FEATURE_ADVANCED_ANALYTICS,
    FEATURE_PHOTOS,
    FEATURE_STARTER_TEMPLATES,
    FEATURE_ALL_FIELD_TYPES,
)

FIELD_CATEGORIES = (
    "basic",
    "rating_scales",
    "date_time",
    "measurement",
    "evidence",
    "location",
    "people",
    "advanced",
    "groups",
)
# Categories every organisation gets, including those without a plan.
DEFAULT_FIELD_CATEGORIES = ("basic", "evidence")


@dataclass(frozen=True)
class PlanTerms:
    # Plain view of a catalog plan so evaluation stays free of storage concerns.
    slug: str
    max_users: int = UNLIMITED
    max_records: int = UNLIMITED
    max_reports_per_month: int = UNLIMITED
    max_storage_gb: int = UNLIMITED
    features: frozenset[str] = frozenset()
    price_monthly_minor: int = 0
    price_annual_minor: int = 0
    price_per_user_monthly_minor: int = 0
    price_per_user_annual_minor: int = 0
    base_users_included: int = 1
    allowed_field_categories: tuple[str, ...] = ()


@dataclass(frozen=True)
class StorageAddOnTerms:
    quantity_blocks: int
    block_size_gb: int = 10
    price_per_block_monthly_minor: int = 500
    is_active: bool = True

    @property
    def total_gb(self) -> int:
        if not self.is_active:
            return 0
        return max(0, self.quantity_blocks) * self.block_size_gb


@dataclass(frozen=True)
class UsageSnapshot:
    users: int = 0
    records: int = 0
    reports_this_month: int = 0
    storage_bytes: int = 0


@dataclass(frozen=True)
class UsageLimit:
    current: int
    limit: int
    exceeded: bool
    # Raw percent may exceed 100; None when unlimited.
    percent: int | None
    display_percent: int | None
    at_warning: bool

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED


@dataclass(frozen=True)
class StorageDetail:
    current_bytes: int
    current_gb: float
    limit_gb: int
    base_limit_gb: int
    addon_gb: int


@dataclass(frozen=True)
class UsageReport:
    users: UsageLimit
    records: UsageLimit
    reports: UsageLimit
    storage: UsageLimit
    storage_detail: StorageDetail

    def as_dict(self) -> dict[str, Any]:
        return {
            "users": _limit_dict(self.users),
            "records": _limit_dict(self.records),
            "reports": _limit_dict(self.reports),
            "storage": {
                **_limit_dict(self.storage),
                "current_gb": self.storage_detail.current_gb,
                "limit_gb": self.storage_detail.limit_gb,
                "base_limit_gb": self.storage_detail.base_limit_gb,
                "addon_gb": self.storage_detail.addon_gb,
            },
        }


@dataclass(frozen=True)
class PriceLine:
    label: str
    quantity: int
    unit_amount_minor: int
    amount_minor: int
    discounted_amount_minor: int


@dataclass(frozen=True)
class PriceBreakdown:
    interval: str
    seats: int
    extra_seats: int
    discount_percent: int
    lines: tuple[PriceLine, ...] = field(default_factory=tuple)

    @property
    def subtotal_minor(self) -> int:
        return sum(line.amount_minor for line in self.lines)

    @property
    def total_minor(self) -> int:
        return sum(line.discounted_amount_minor for line in self.lines)

    @property
    def discount_minor(self) -> int:
        return self.subtotal_minor - self.total_minor

    @property
    def is_free_access(self) -> bool:
        # A full discount is distinct from being on the free plan.
        return self.discount_percent == 100


def _limit_dict(limit: UsageLimit) -> dict[str, Any]:
    return {
        "current": limit.current,
        "limit": limit.limit,
        "exceeded": limit.exceeded,
        "percent": limit.percent,
        "display_percent": limit.display_percent,
        "at_warning": limit.at_warning,
    }


def plan_terms(plan: SubscriptionPlan) -> PlanTerms:
    features = frozenset(key for key in FEATURE_KEYS if bool(getattr(plan, f"feature_{key}", False)))
    return PlanTerms(
        slug=plan.slug,
        max_users=plan.max_users,
        max_records=plan.max_records,
        max_reports_per_month=plan.max_reports_per_month,
        max_storage_gb=plan.max_storage_gb,
        features=features,
        price_monthly_minor=plan.price_monthly_minor,
        price_annual_minor=plan.price_annual_minor,
        price_per_user_monthly_minor=plan.price_per_user_monthly_minor,
        price_per_user_annual_minor=plan.price_per_user_annual_minor,
        base_users_included=plan.base_users_included,
        allowed_field_categories=tuple(plan.allowed_field_categories or ()),
    )


def addon_terms(addon: StorageAddOn | None) -> StorageAddOnTerms | None:
    if addon is None:
        return None
    return StorageAddOnTerms(
        quantity_blocks=addon.quantity_blocks,
        block_size_gb=addon.block_size_gb,
        price_per_block_monthly_minor=addon.price_per_block_monthly_minor,
        is_active=addon.is_active,
    )


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def usage_percent(current: int, limit: int) -> int | None:
    if limit == UNLIMITED:
        return None
    return round_half_up(Decimal(current) * 100 / Decimal(max(limit, 1)))


def evaluate_limit(current: int, limit: int, *, warning_percent: int = WARNING_PERCENT) -> UsageLimit:
    # Exceeded and warning are independent checks against the raw numbers.
    if limit == UNLIMITED:
        return UsageLimit(
            current=current,
            limit=limit,
            exceeded=False,
            percent=None,
            display_percent=None,
            at_warning=False,
        )
    percent = usage_percent(current, limit)
    return UsageLimit(
        current=current,
        limit=limit,
        exceeded=current >= limit,
        percent=percent,
        display_percent=min(percent, 100),
        at_warning=percent >= warning_percent,
    )


def effective_storage_limit_gb(plan: PlanTerms, addon: StorageAddOnTerms | None) -> int:
    if plan.max_storage_gb == UNLIMITED:
        return UNLIMITED
    return plan.max_storage_gb + (addon.total_gb if addon is not None else 0)


def evaluate_usage(
    plan: PlanTerms | None,
    usage: UsageSnapshot,
    addon: StorageAddOnTerms | None = None,
    *,
    warning_percent: int = WARNING_PERCENT,
) -> UsageReport | None:
    if plan is None:
        return None
    limit_gb = effective_storage_limit_gb(plan, addon)
    limit_bytes = UNLIMITED if limit_gb == UNLIMITED else limit_gb * BYTES_PER_GB
    addon_gb = 0 if plan.max_storage_gb == UNLIMITED or addon is None else addon.total_gb
    return UsageReport(
        users=evaluate_limit(usage.users, plan.max_users, warning_percent=warning_percent),
        records=evaluate_limit(usage.records, plan.max_records, warning_percent=warning_percent),
        reports=evaluate_limit(
            usage.reports_this_month, plan.max_reports_per_month, warning_percent=warning_percent
        ),
        storage=evaluate_limit(usage.storage_bytes, limit_bytes, warning_percent=warning_percent),
        storage_detail=StorageDetail(
            current_bytes=usage.storage_bytes,
            current_gb=round(usage.storage_bytes / BYTES_PER_GB, 2),
            limit_gb=limit_gb,
            base_limit_gb=plan.max_storage_gb,
            addon_gb=addon_gb,
        ),
    )


def has_capacity(limit: UsageLimit) -> bool:
    return limit.unlimited or limit.current < limit.limit


def _discounted(amount: int, discount_percent: int) -> int:
    return round_half_up(Decimal(amount) * Decimal(100 - discount_percent) / 100)


def compute_price(
    plan: PlanTerms,
    *,
    seats: int,
    interval: str = INTERVAL_MONTHLY,
    discount_percent: int = 0,
    addon: StorageAddOnTerms | None = None,
) -> PriceBreakdown:
    if interval not in BILLING_INTERVALS:
        raise ValueError(f"Unknown billing interval: {interval}")
    if not 0 <= discount_percent <= 100:
        raise ValueError("discount_percent must be between 0 and 100")
    annual = interval == INTERVAL_ANNUAL
    base_price = plan.price_annual_minor if annual else plan.price_monthly_minor
    seat_price = plan.price_per_user_annual_minor if annual else plan.price_per_user_monthly_minor
    # Extra seats are priced even beyond the plan's seat limit.
    extra_seats = max(0, seats - plan.base_users_included)

    lines: list[tuple[str, int, int]] = [("base", 1, base_price), ("extra_seats", extra_seats, seat_price)]
    if addon is not None and addon.is_active and addon.quantity_blocks > 0:
        months = 12 if annual else 1
        lines.append(("storage_addon", addon.quantity_blocks, addon.price_per_block_monthly_minor * months))

    price_lines = tuple(
        PriceLine(
            label=label,
            quantity=quantity,
            unit_amount_minor=unit,
            amount_minor=quantity * unit,
            discounted_amount_minor=_discounted(quantity * unit, discount_percent),
        )
        for label, quantity, unit in lines
    )
    return PriceBreakdown(
        interval=interval,
        seats=seats,
        extra_seats=extra_seats,
        discount_percent=discount_percent,
        lines=price_lines,
    )


def is_feature_available(plan: PlanTerms | None, feature: str) -> bool:
    if plan is None or feature not in FEATURE_KEYS:
        return False
    return feature in plan.features


def allowed_field_categories(plan: PlanTerms | None) -> tuple[str, ...]:
    if plan is None or not plan.allowed_field_categories:
        return DEFAULT_FIELD_CATEGORIES
    return plan.allowed_field_categories


def is_field_category_allowed(plan: PlanTerms | None, category: str) -> bool:
    if category not in allowed_field_categories(plan):
        return False
    if category in DEFAULT_FIELD_CATEGORIES:
        return True
    # Non-default categories also need the all-field-types flag.
    return plan is not None and FEATURE_ALL_FIELD_TYPES in plan.features
