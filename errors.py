"""
Error types shared by the Habit Lab modules.
Routes in app.py translate these into JSON responses.
"""


class HabitLabError(Exception):
    """Base class for all application errors."""

    status_code = 500

    def __init__(self, message=""):
        super().__init__(message)
        self.message = message


class ValidationError(HabitLabError):
    """User input is missing or out of range. Carries field-level messages."""

    status_code = 400

    def __init__(self, errors):
        self.errors = dict(errors)
        fields = ", ".join(sorted(self.errors))
        super().__init__(f"Invalid input: {fields}")


class ConfirmationRequired(HabitLabError):
    """A record-altering action was attempted without the caller's confirmation."""

    status_code = 400


class NotFoundError(HabitLabError):
    """Referenced experiment, record or token does not exist for this user."""

    status_code = 404


class StoreUnavailableError(HabitLabError):
    """The backing store failed. No partial state change was made."""

    status_code = 503


class InvariantViolation(HabitLabError):
    """The one-active-experiment-per-user rule would be (or has been) broken."""

    status_code = 409


class DeliveryError(HabitLabError):
    """A push message could not be delivered to a device token."""

    def __init__(self, code, permanent=False):
        super().__init__(f"Delivery failed: {code}")
        self.code = code
        self.permanent = permanent
