from functools import lru_cache
from io import BytesIO

from PIL import Image, ImageColor, ImageDraw, ImageFont

from incident_data import FALLBACK_COLOR, PRIORITY_COLORS

DEFAULT_ICON_SIZE = 24
RING_WIDTH = 2
FONT_PATH = "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf"


def _load_font(size):
    try:
        return ImageFont.truetype(FONT_PATH, size)
    except OSError:
        return ImageFont.load_default()


def render_marker_icon(color, size=DEFAULT_ICON_SIZE, label=None):
    """Draw a filled circle with a white ring and return it as PNG bytes.

    ``label`` is centered inside the circle, e.g. an incident count.
    """

    try:
        fill = ImageColor.getrgb(color)
    except ValueError:
        fill = ImageColor.getrgb(FALLBACK_COLOR)

    # Draw at 4x and downsample so the edge is antialiased.
    scale = 4
    canvas = size * scale
    img = Image.new("RGBA", (canvas, canvas), (0, 0, 0, 0))
    draw = ImageDraw.Draw(img)

    draw.ellipse([0, 0, canvas - 1, canvas - 1], fill=(255, 255, 255, 255))
    inset = RING_WIDTH * scale
    draw.ellipse([inset, inset, canvas - 1 - inset, canvas - 1 - inset], fill=fill + (230,))

    if label:
        text = str(label)
        font = _load_font(canvas // 2)
        bbox = draw.textbbox((0, 0), text, font=font)
        tw = bbox[2] - bbox[0]
        th = bbox[3] - bbox[1]
        draw.text(
            ((canvas - tw) // 2 - bbox[0], (canvas - th) // 2 - bbox[1]),
            text,
            font=font,
            fill=(255, 255, 255, 255),
        )

    img = img.resize((size, size), Image.LANCZOS)

    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@lru_cache(maxsize=32)
def priority_marker_png(priority, size=DEFAULT_ICON_SIZE):
    return render_marker_icon(PRIORITY_COLORS.get(str(priority), FALLBACK_COLOR), size=size)
