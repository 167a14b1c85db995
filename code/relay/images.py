# =============================================================================
#  Babelcord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import asyncio
import io

from PIL import Image, ImageSequence

# Discord rejects emoji uploads above 256 KiB
EMOJI_MAX_BYTES = 262_144
EMOJI_EDGE = 128


def is_animated(data: bytes) -> bool:
    with Image.open(io.BytesIO(data)) as img:
        return bool(getattr(img, "is_animated", False))


def _sync_shrink_static(data: bytes, max_bytes: int) -> bytes:
    if len(data) <= max_bytes:
        return data
    img = Image.open(io.BytesIO(data)).convert("RGBA")
    img.thumbnail((EMOJI_EDGE, EMOJI_EDGE), Image.LANCZOS)

    out = io.BytesIO()
    img.save(out, format="PNG", optimize=True)
    result = out.getvalue()
    if len(result) <= max_bytes:
        return result

    out = io.BytesIO()
    img.convert("P", palette=Image.ADAPTIVE).save(out, format="PNG", optimize=True)
    result = out.getvalue()
    return result if len(result) <= max_bytes else data


def _sync_shrink_animated(data: bytes, max_bytes: int) -> bytes:
    if len(data) <= max_bytes:
        return data
    img = Image.open(io.BytesIO(data))
    frames, durations = [], []
    for frame in ImageSequence.Iterator(img):
        f = frame.convert("RGBA")
        f.thumbnail((EMOJI_EDGE, EMOJI_EDGE), Image.LANCZOS)
        frames.append(f)
        durations.append(frame.info.get("duration", 100))

    out = io.BytesIO()
    frames[0].save(
        out, format="GIF", save_all=True, append_images=frames[1:],
        duration=durations, loop=0, optimize=True
    )
    result = out.getvalue()
    return result if len(result) <= max_bytes else data


async def shrink_emoji(data: bytes, max_bytes: int = EMOJI_MAX_BYTES) -> bytes:
    """Downscale emoji image bytes off the loop; returns the input if it can't get under max_bytes."""
    loop = asyncio.get_running_loop()
    fn = _sync_shrink_animated if is_animated(data) else _sync_shrink_static
    return await loop.run_in_executor(None, fn, data, max_bytes)

