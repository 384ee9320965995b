from __future__ import annotations

from huayu.client.console import main as launch_console
from huayu.client.session import TutorSession

__all__ = ["TutorSession", "launch_console"]
