import io

import pytest
from PIL import Image, ImageDraw


SPECS_REPLY = {
    "dimensions": {"length": 200, "width": 100, "height": None, "thickness": 6, "diameter": None, "unit": "mm"},
    "material": {"type": "Steel", "grade": "SS400", "specifications": "JIS G3101", "confidence": 0.9},
    "quantity": 10,
    "surfaceFinish": "Ra 3.2",
    "tolerances": ["±0.1"],
    "manufacturingProcess": ["laser cutting", "drilling"],
    "overallConfidence": 0.8,
}

COST_REPLY = {
    "material": {"totalCost": 12000, "reasoning": "SS400 plate"},
    "labor": {"totalCost": 30000, "estimatedHours": 6, "hourlyRate": 5000},
    "overhead": {"percentage": 15, "amount": 6300},
    "total": {"cost": 48300},
    "confidence": 0.75,
    "reasoning": "Laser cut plate with four holes",
}


class FakeCapability:
    """Scripted ModelCapability: hands out queued replies and records every call.

    A queued Exception is raised instead of returned.
    """

    name = "fake"
    model = "fake-vision-1"

    def __init__(self, *replies, supports_schema: bool = True, healthy: bool = True):
        self.replies = list(replies)
        self.supports_schema = supports_schema
        self.healthy = healthy
        self.calls: list[dict] = []
        self.closed = False

    async def generate_structured(self, prompt, image=None, schema=None):
        self.calls.append({"prompt": prompt, "image": image, "schema": schema})
        if not self.replies:
            raise AssertionError("FakeCapability ran out of scripted replies")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def health_check(self):
        return self.healthy

    async def close(self):
        self.closed = True


def make_image(fmt: str = "PNG", size=(800, 600), mode: str = "RGB", color="white") -> bytes:
    """Encode a simple line drawing in the requested format."""
    img = Image.new(mode, size, color)
    draw = ImageDraw.Draw(img)
    ink = 0 if mode in ("L", "LA", "P") else (0, 0, 0, 255)[: len(mode)]
    draw.rectangle((size[0] // 8, size[1] // 8, size[0] * 7 // 8, size[1] * 7 // 8), outline=ink, width=3)
    draw.line((0, size[1] // 2, size[0], size[1] // 2), fill=ink, width=1)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def png_bytes():
    return make_image("PNG")


@pytest.fixture
def fake_capability():
    return FakeCapability(dict(SPECS_REPLY), dict(COST_REPLY))
