"""Playbook action vocabulary."""

import re
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

TEMPLATE_VAR = re.compile(r"\{(\w+)\}")


def substitute(template: str, variables: dict[str, str]) -> str:
    """Replace ``{name}`` placeholders; unknown names are left as-is."""
    return TEMPLATE_VAR.sub(lambda m: str(variables.get(m.group(1), m.group(0))), template)


class Navigate(BaseModel):
    action: Literal["navigate"] = "navigate"
    url: str


class Click(BaseModel):
    action: Literal["click"] = "click"
    selector: str
    fallback_selectors: list[str] = []
    optional: bool = False
    timeout_ms: int = 5000
    commits_order: bool = False  # Clicking places the order; a later failure is never retried

    @property
    def selectors(self) -> list[str]:
        return [self.selector, *self.fallback_selectors]


class Fill(BaseModel):
    action: Literal["fill"] = "fill"
    selector: str
    fallback_selectors: list[str] = []
    value: str
    optional: bool = False
    timeout_ms: int = 5000

    @property
    def selectors(self) -> list[str]:
        return [self.selector, *self.fallback_selectors]


class Wait(BaseModel):
    action: Literal["wait"] = "wait"
    ms: int
    jitter_ms: int = 0


class WaitForVisible(BaseModel):
    action: Literal["wait_for_visible"] = "wait_for_visible"
    selector: str
    optional: bool = False
    timeout_ms: int = 10000


class DismissOverlay(BaseModel):
    """Click the first visible overlay button; never fails the replay."""

    action: Literal["dismiss_overlay"] = "dismiss_overlay"
    selectors: list[str]
    timeout_ms: int = 1500


class AssertUrl(BaseModel):
    """
    Checkpoint on the current URL. With ``fail_if`` false the step fails when
    the URL does NOT contain the fragment; with ``fail_if`` true it fails when
    it does.
    """

    action: Literal["assert_url"] = "assert_url"
    contains: str
    fail_if: bool = False
    message: str = ""


class AssertText(BaseModel):
    """Checkpoint on visible page text, matched as a case-insensitive regex."""

    action: Literal["assert_text"] = "assert_text"
    pattern: str
    fail_if: bool = True
    message: str = ""


class AssertPrice(BaseModel):
    """
    Price gate against ``limit`` (normally ``{ceiling}``).

    The ``product`` stage reads the shown price before anything is carted and
    fails the purchase outright. The ``checkout`` stage reads the order total,
    compares it with ``limit`` times ``quantity`` and leaves the item carted for
    review. The gate passes when no limit is set or no price is shown.
    """

    action: Literal["assert_price"] = "assert_price"
    limit: str = "{ceiling}"
    quantity: str = "1"
    stage: Literal["product", "checkout"] = "product"
    selector: str = "body"
    timeout_ms: int = 2000


Action = Annotated[
    Union[Navigate, Click, Fill, Wait, WaitForVisible, DismissOverlay, AssertUrl, AssertText, AssertPrice],
    Field(discriminator="action"),
]

_steps_adapter: TypeAdapter = TypeAdapter(list[Action])


def parse_steps(raw: list[dict]) -> list:
    """Validate stored step dicts into action models."""
    return _steps_adapter.validate_python(raw)


def dump_steps(steps: list) -> list[dict]:
    return [step.model_dump() if isinstance(step, BaseModel) else dict(step) for step in steps]


def describe(step) -> str:
    """One-line human description used in replay logs."""
    if isinstance(step, Navigate):
        return f"navigate {step.url}"
    if isinstance(step, (Click, Fill)):
        return f"{step.action} {step.selector}"
    if isinstance(step, Wait):
        return f"wait {step.ms}ms"
    if isinstance(step, WaitForVisible):
        return f"wait for {step.selector}"
    if isinstance(step, DismissOverlay):
        return f"dismiss overlay ({len(step.selectors)} candidates)"
    if isinstance(step, AssertUrl):
        return f"assert url {'not ' if step.fail_if else ''}contains {step.contains}"
    if isinstance(step, AssertText):
        return f"assert text {'absent' if step.fail_if else 'present'}: {step.pattern}"
    if isinstance(step, AssertPrice):
        return f"assert {step.stage} price <= {step.limit}"
    return step.action
