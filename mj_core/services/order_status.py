"""
订单履约状态机

所有状态变化都经过这里校验：正向转换、撤销（revert）和手动可设状态。
"""
from typing import Dict, FrozenSet, List, Optional

from mj_core.models.orders import CustomStatus
from mj_core.utils.errors import InvalidTransitionError

S = CustomStatus

# 正向转换：当前状态 -> 允许的下一状态
ORDER_TRANSITIONS: Dict[CustomStatus, FrozenSet[CustomStatus]] = {
    S.NEW: frozenset({S.CONFIRMED, S.CANCELLATION_REQUESTED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.READY_TO_DISPATCH, S.CANCELLATION_REQUESTED, S.CANCELLED}),
    S.READY_TO_DISPATCH: frozenset({S.DISPATCHED, S.CANCELLATION_REQUESTED}),
    # 以下由快递状态驱动
    S.DISPATCHED: frozenset({S.IN_TRANSIT, S.OUT_FOR_DELIVERY, S.DELIVERED, S.RTO_IN_TRANSIT, S.LOST}),
    S.IN_TRANSIT: frozenset({S.OUT_FOR_DELIVERY, S.DELIVERED, S.RTO_IN_TRANSIT, S.LOST}),
    S.OUT_FOR_DELIVERY: frozenset({S.DELIVERED, S.RTO_IN_TRANSIT, S.LOST}),
    S.DELIVERED: frozenset({S.DTO_REQUESTED, S.CLOSED}),
    # RTO 分支
    S.RTO_IN_TRANSIT: frozenset({S.RTO_DELIVERED, S.LOST}),
    S.RTO_DELIVERED: frozenset({S.RTO_CLOSED}),
    # DTO 分支
    S.DTO_REQUESTED: frozenset({S.DTO_BOOKED}),
    S.DTO_BOOKED: frozenset({S.DTO_IN_TRANSIT}),
    S.DTO_IN_TRANSIT: frozenset({S.DTO_DELIVERED, S.LOST}),
    S.DTO_DELIVERED: frozenset({S.PENDING_REFUNDS}),
    S.PENDING_REFUNDS: frozenset({S.DTO_REFUNDED}),
    S.CANCELLATION_REQUESTED: frozenset({S.CANCELLED}),
    # 终态
    S.CLOSED: frozenset(),
    S.RTO_CLOSED: frozenset(),
    S.DTO_REFUNDED: frozenset(),
    S.LOST: frozenset(),
    S.CANCELLED: frozenset(),
}

TERMINAL_STATUSES: FrozenSet[CustomStatus] = frozenset(
    status for status, targets in ORDER_TRANSITIONS.items() if not targets
)

# 撤销：当前状态 -> 撤销后的状态（每个状态至多一个撤销目标）
REVERT_TRANSITIONS: Dict[CustomStatus, CustomStatus] = {
    S.READY_TO_DISPATCH: S.CONFIRMED,
    S.DISPATCHED: S.CONFIRMED,
    S.DTO_REQUESTED: S.DELIVERED,
    S.DTO_BOOKED: S.DELIVERED,
    S.CLOSED: S.DELIVERED,
    S.CANCELLATION_REQUESTED: S.CONFIRMED,
}

# 用户可手动设置的状态及日志备注
MANUAL_STATUS_REMARKS: Dict[CustomStatus, str] = {
    S.CONFIRMED: "This order was confirmed by the user",
    S.CLOSED: "This order was received by the customer and manually closed",
    S.RTO_CLOSED: "This order was returned and received by the owner and manually closed",
    S.CANCELLATION_REQUESTED: "Cancellation was requested by the user",
    S.CANCELLED: "This order was cancelled by the user",
}

MANUAL_STATUSES: FrozenSet[CustomStatus] = frozenset(MANUAL_STATUS_REMARKS)

# 退货预约：当前状态 -> 预约成功后的状态
RETURN_BOOKING_TARGETS: Dict[CustomStatus, CustomStatus] = {
    S.DELIVERED: S.DTO_REQUESTED,
    S.DTO_REQUESTED: S.DTO_BOOKED,
}

# 退货质检结果（按订单行）
QC_STATUSES: FrozenSet[str] = frozenset({"QC Pass", "QC Fail", "Not Received"})

QC_SUBMITTED_REMARKS = "QC submitted with unboxing video"

# 退款方式
REFUND_METHODS: FrozenSet[str] = frozenset({"manual", "store_credit"})


def refund_remarks(method: str, amount: Optional[float], currency: Optional[str]) -> str:
    """退款日志备注"""
    if amount is None:
        return "Order was refunded"
    money = f"{currency or ''} {float(amount):.2f}".strip()
    if method == "store_credit":
        return f"Refunded {money} to customer's store credits"
    return f"Manually refunded {money}"


# 可以做退货入库的状态
RETURN_RECEIVABLE_STATUSES: FrozenSet[CustomStatus] = frozenset({
    S.RTO_DELIVERED, S.RTO_CLOSED, S.DTO_DELIVERED, S.PENDING_REFUNDS, S.DTO_REFUNDED,
})

# 可以拣货（预占库存）的状态
PICKABLE_STATUSES: FrozenSet[CustomStatus] = frozenset({S.NEW, S.CONFIRMED, S.READY_TO_DISPATCH})

# 快递回传可以设置的状态
CARRIER_STATUSES: FrozenSet[CustomStatus] = frozenset({
    S.IN_TRANSIT, S.OUT_FOR_DELIVERY, S.DELIVERED, S.RTO_IN_TRANSIT, S.RTO_DELIVERED,
    S.DTO_IN_TRANSIT, S.DTO_DELIVERED, S.LOST,
})


def parse_status(value) -> CustomStatus:
    """把展示文本转换为 CustomStatus；未知取值抛出 ValueError"""
    if isinstance(value, CustomStatus):
        return value
    return CustomStatus(value)


def can_transition(current_status: CustomStatus, new_status: CustomStatus) -> bool:
    """检查正向转换是否允许"""
    return new_status in ORDER_TRANSITIONS.get(current_status, frozenset())


def get_allowed_transitions(current_status: CustomStatus) -> List[CustomStatus]:
    """当前状态可以转换到的状态（按枚举定义顺序）"""
    allowed = ORDER_TRANSITIONS.get(current_status, frozenset())
    return [status for status in CustomStatus if status in allowed]


def is_terminal(status: CustomStatus) -> bool:
    return status in TERMINAL_STATUSES


def validate_transition(current_status: CustomStatus, new_status: CustomStatus) -> None:
    """校验正向转换，不允许时抛出 InvalidTransitionError（包含当前和目标状态）"""
    if can_transition(current_status, new_status):
        return

    if is_terminal(current_status):
        detail = f"Order in '{current_status.value}' status cannot be modified. This is a terminal state."
    else:
        allowed = ", ".join(status.value for status in get_allowed_transitions(current_status))
        detail = (
            f"Cannot change order from '{current_status.value}' to '{new_status.value}'. "
            f"Allowed transitions: {allowed}"
        )
    raise InvalidTransitionError(current_status.value, new_status.value, detail=detail)


def get_revert_target(current_status: CustomStatus) -> Optional[CustomStatus]:
    return REVERT_TRANSITIONS.get(current_status)


def validate_revert(current_status: CustomStatus) -> CustomStatus:
    """校验撤销操作，返回撤销后的状态"""
    target = get_revert_target(current_status)
    if target is None:
        raise InvalidTransitionError(
            current_status.value,
            "revert",
            detail=f"Order in '{current_status.value}' status cannot be reverted"
        )
    return target


def revert_remarks(target: CustomStatus) -> str:
    return f"Order status reverted to {target.value} by user."
