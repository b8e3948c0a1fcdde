import io

import httpx
import pytest
from PIL import Image

from channel_harvester.config import ProbeConfig
from channel_harvester.models import ImageRecord
from channel_harvester.probe import ImageProber, get_dimensions


def png_bytes(width, height):
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color=(120, 40, 40)).save(buf, format="PNG")
    return buf.getvalue()


async def no_sleep(_):
    pass


def make_prober(handler, **cfg):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ImageProber(ProbeConfig(**cfg), client=client, sleep=no_sleep)


def rec(id, url, width=0, height=0, thumbnail_url=None):
    return ImageRecord(id=id, message_id=1, url=url, width=width, height=height, thumbnail_url=thumbnail_url)


def test_get_dimensions():
    assert get_dimensions(png_bytes(640, 480)) == (640, 480)
    assert get_dimensions(b"not an image") is None


class TestProbeDimensions:
    @pytest.mark.asyncio
    async def test_fills_unknown_sizes(self):
        body = png_bytes(1024, 768)

        def handler(request):
            return httpx.Response(200, content=body)

        prober = make_prober(handler)
        records = [rec("a", "https://cdn.example/a.jpg"), rec("b", "https://cdn.example/b.jpg", 300, 300)]
        assert await prober.probe_dimensions(records) == 1
        assert (records[0].width, records[0].height) == (1024, 768)
        assert (records[1].width, records[1].height) == (300, 300)
        await prober._client.aclose()

    @pytest.mark.asyncio
    async def test_failures_leave_size_unknown(self):
        def handler(request):
            if request.url.path == "/missing.jpg":
                return httpx.Response(404)
            return httpx.Response(200, content=b"garbage")

        prober = make_prober(handler)
        records = [rec("a", "https://cdn.example/missing.jpg"), rec("b", "https://cdn.example/garbage.jpg")]
        assert await prober.probe_dimensions(records) == 0
        assert all(r.width == 0 and r.height == 0 for r in records)
        await prober._client.aclose()

    @pytest.mark.asyncio
    async def test_non_http_urls_skipped(self):
        calls = []

        def handler(request):
            calls.append(request.url)
            return httpx.Response(200)

        prober = make_prober(handler)
        assert await prober.probe_dimensions([rec("a", "data:image/png;base64,AAAA")]) == 0
        assert calls == []
        await prober._client.aclose()

    @pytest.mark.asyncio
    async def test_batches_pause_between(self):
        pauses = []

        async def record(seconds):
            pauses.append(seconds)

        body = png_bytes(400, 300)
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, content=body)))
        prober = ImageProber(ProbeConfig(batch_size=10, batch_pause=0.1), client=client, sleep=record)
        records = [rec(str(i), f"https://cdn.example/{i}.jpg") for i in range(25)]
        assert await prober.probe_dimensions(records) == 25
        assert pauses == [0.1, 0.1]
        await client.aclose()


class TestCheckImages:
    @pytest.mark.asyncio
    async def test_splits_valid_and_broken(self):
        seen = []

        def handler(request):
            seen.append((request.method, request.url.path))
            return httpx.Response(404 if "gone" in request.url.path else 200)

        prober = make_prober(handler)
        ok = rec("ok", "https://cdn.example/full.jpg", thumbnail_url="https://cdn.example/thumb_ok.jpg")
        gone = rec("gone", "https://cdn.example/gone.jpg")
        valid, broken = await prober.check_images([ok, gone])
        assert valid == [ok]
        assert broken == [gone]
        assert ("HEAD", "/thumb_ok.jpg") in seen
        await prober._client.aclose()

    @pytest.mark.asyncio
    async def test_transport_error_is_broken(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        prober = make_prober(handler)
        valid, broken = await prober.check_images([rec("a", "https://cdn.example/a.jpg")])
        assert valid == []
        assert [r.id for r in broken] == ["a"]
        await prober._client.aclose()
