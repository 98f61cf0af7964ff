"""View state consumed by the presentation layer."""

from mailmirror.view.state import CommandResult, ViewState

__all__ = ["CommandResult", "ViewState"]
