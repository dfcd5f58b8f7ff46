"""
Colour helpers for turning bridge colour state into displayable RGB.
"""

from __future__ import annotations

import math
from typing import Iterable

from hue_session.models import Light, Scene, SceneAction


RGB = tuple[int, int, int]


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _gamma(channel: float) -> float:
    if channel <= 0.0031308:
        return 12.92 * channel
    return 1.055 * math.pow(channel, 1.0 / 2.4) - 0.055


def _to_byte(channel: float) -> int:
    return int(round(_clamp(channel, 0.0, 1.0) * 255))


def xy_to_rgb(x: float, y: float, brightness: float = 100.0) -> RGB:
    """
    Convert a CIE xy chromaticity plus brightness to RGB.
    x, y: 0-1
    brightness: 0-100 (percent)
    Returns: (r, g, b) as 0-255 integers
    """
    x = _clamp(x, 0.0, 1.0)
    y = _clamp(y, 0.0, 1.0)
    level = _clamp(brightness, 0.0, 100.0) / 100.0

    if y <= 0.0001:
        grey = _to_byte(level)
        return (grey, grey, grey)

    z = 1.0 - x - y
    big_y = level
    big_x = (big_y / y) * x
    big_z = (big_y / y) * z

    r = big_x * 1.656492 - big_y * 0.354851 - big_z * 0.255038
    g = -big_x * 0.707196 + big_y * 1.655397 + big_z * 0.036152
    b = big_x * 0.051713 - big_y * 0.121364 + big_z * 1.011530

    return (_to_byte(_gamma(r)), _to_byte(_gamma(g)), _to_byte(_gamma(b)))


def mirek_to_rgb(mirek: int, brightness: float = 100.0) -> RGB:
    """
    Approximate the RGB colour of a blackbody at the given colour temperature.
    mirek: 1,000,000 / kelvin
    brightness: 0-100 (percent)
    """
    kelvin = 1_000_000.0 / max(1, mirek)
    level = _clamp(brightness, 0.0, 100.0) / 100.0

    if kelvin <= 6600:
        r = 1.0
        g = _clamp(99.4708025861 * math.log(kelvin / 100.0) - 161.1195681661, 0.0, 255.0) / 255.0
    else:
        temp = kelvin / 100.0 - 60.0
        r = _clamp(329.698727446 * math.pow(temp, -0.1332047592), 0.0, 255.0) / 255.0
        g = _clamp(288.1221695283 * math.pow(temp, -0.0755148492), 0.0, 255.0) / 255.0

    if kelvin >= 6600:
        b = 1.0
    elif kelvin <= 1900:
        b = 0.0
    else:
        b = _clamp(138.5177312231 * math.log(kelvin / 100.0 - 10.0) - 305.0447927307, 0.0, 255.0) / 255.0

    return (_to_byte(r * level), _to_byte(g * level), _to_byte(b * level))


def rgb_to_hex(rgb: RGB) -> str:
    r, g, b = rgb
    return f"#{r:02x}{g:02x}{b:02x}".upper()


def action_rgb(action: SceneAction | Light) -> RGB | None:
    """XY colour wins over colour temperature; no colour data gives None."""
    brightness = action.brightness if action.brightness is not None else 100.0
    if action.color_xy is not None:
        return xy_to_rgb(action.color_xy.x, action.color_xy.y, brightness)
    if action.color_temp_mirek is not None:
        return mirek_to_rgb(action.color_temp_mirek, brightness)
    return None


def _colors(entries: Iterable[SceneAction | Light]) -> list[RGB]:
    out: list[RGB] = []
    for entry in entries:
        rgb = action_rgb(entry)
        if rgb is not None:
            out.append(rgb)
    return out


def scene_colors(scene: Scene) -> list[RGB]:
    colors = _colors(scene.actions)
    if not colors:
        colors = _colors(scene.palette)
    return colors


def scene_average_brightness(scene: Scene) -> float | None:
    levels = [a.brightness for a in scene.actions if a.brightness is not None]
    if not levels:
        return None
    return sum(levels) / len(levels)


def light_colors(lights: Iterable[Light], *, include_off: bool = False) -> list[RGB]:
    return _colors(light for light in lights if include_off or light.on)
