"""Point rules per activity type."""

CLASS_POINTS_PER_ATTENDANCE = 50

# Log values below this are attendance counts, anything else is already points.
# Fragile: a member with 5+ attendances stored as a single count is misread as
# points. Both conventions exist in stored data, so the threshold stays.
CLASS_COUNT_THRESHOLD = 5


def class_points_from_attendance(count: float) -> float:
    return max(count, 0) * CLASS_POINTS_PER_ATTENDANCE


def class_points_from_log(value: float) -> float:
    """Points for a class event read back from the unified log."""
    if value < CLASS_COUNT_THRESHOLD:
        return class_points_from_attendance(value)
    return value


def class_count_from_log(value: float) -> float:
    """Attendance count for a class event read back from the unified log."""
    if value < CLASS_COUNT_THRESHOLD:
        return max(value, 0)
    return -(-value // CLASS_POINTS_PER_ATTENDANCE)  # ceil


def points_for(activity_type: str, value: float) -> float:
    """Points contributed by one unified-log event. Never negative."""
    if value <= 0:
        return 0
    if activity_type == "class":
        return class_points_from_log(value)
    # meditation minutes and practice per-session points count 1:1
    return value
