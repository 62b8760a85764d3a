# MelodyHub
# Copyright (C) 2024-2026 MelodyHub contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
NowPlayingLabel — the "now playing" decoration (window title, status line).

The controller never touches the presentation's title directly; it goes
through the single setter injected here, and restore() always puts back the
baseline captured at construction.
"""

import logging

from .names import display_name

log = logging.getLogger(__name__)


class NowPlayingLabel:

    def __init__(self, setter=None, baseline: str = "MelodyHub"):
        self._setter = setter
        self.baseline = baseline
        self.text = baseline

    def show(self, track: str):
        self._set(f"{display_name(track)} — {self.baseline}")

    def restore(self):
        if self.text != self.baseline:
            self._set(self.baseline)

    def _set(self, text: str):
        self.text = text
        if self._setter is None:
            return
        try:
            self._setter(text)
        except Exception as e:
            log.warning("Now-playing setter failed: %s", e)
