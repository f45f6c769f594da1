"""Banner geometry and ffmpeg filter strings for the text overlay."""
import os
from typing import Dict

TEXT_PADDING = 10


def count_lines(text_file: str) -> int:
    try:
        with open(text_file, 'r', encoding='utf-8') as f:
            text = f.read()
    except OSError:
        return 1
    return len(text.split('\n')) if text else 1


def compute_layout(text_file: str, font_size: int = 16, box_height: int = 75,
                   x: str | None = None, y: str | None = None) -> Dict[str, object]:
    """Positions for the banner box and its text.

    Custom X/Y expressions are used verbatim (spaces removed) for both the box and
    the text. Without them the box sits on the bottom edge and the text is
    vertically centred inside it.
    """
    lines = count_lines(text_file)
    approx = max(int(font_size), 12) * max(1, lines)
    custom_x = (x or '').replace(' ', '')
    custom_y = (y or '').replace(' ', '')
    box_height = int(box_height)

    if custom_x:
        box_x = text_x = custom_x
    else:
        box_x, text_x = '0', str(TEXT_PADDING)
    if custom_y:
        box_y = text_y = custom_y
    else:
        inset = max(0, (box_height - approx) // 2)
        box_y = f'ih-{box_height}'
        text_y = f'h-{box_height}+{inset}'
    return {
        'drawbox_x': box_x,
        'drawbox_y': box_y,
        'text_x': text_x,
        'text_y': text_y,
        'approx_text_height': approx,
        'line_count': lines,
        'has_custom_x': bool(custom_x),
        'has_custom_y': bool(custom_y),
    }


def escape_filter_path(value: str) -> str:
    return (value or '').replace('\\', '\\\\').replace("'", "\\'")


def clamp_quality(q) -> int:
    try:
        q = int(q)
    except (TypeError, ValueError):
        return 5
    return max(2, min(10, q))


def build_filter(layout: Dict[str, object], text_file: str, font_file: str, font_size: int = 16,
                 font_color: str = 'white', box_color: str = 'black@0.4', box_height: int = 75) -> str:
    drawbox = (
        f"drawbox=x={layout['drawbox_x']}:y={layout['drawbox_y']}:w=iw:h={int(box_height)}"
        f":color={box_color}:t=fill"
    )
    drawtext = (
        f"drawtext=fontfile='{escape_filter_path(font_file)}'"
        f":textfile='{escape_filter_path(os.path.abspath(text_file))}'"
        f":reload=1:expansion=none:fontsize={int(font_size)}:fontcolor={font_color}"
        f":x={layout['text_x']}:y={layout['text_y']}"
    )
    return f'{drawbox},{drawtext}'
