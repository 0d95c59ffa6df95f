import click

from orchestration.constants import PLAN_ID_PATTERN


class PlanId(click.ParamType):
    """A plan id usable as a ledger file name."""

    name = "plan_id"

    def convert(self, value, param, ctx):
        if not PLAN_ID_PATTERN.match(value):
            self.fail(
                f"'{value}' is not a valid plan id; use letters, digits, '.', '_' or '-'",
                param,
                ctx,
            )
        return value
