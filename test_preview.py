"""Port detection, the preview port registry and reachability probing."""

import asyncio
import socket

from tools.preview import PortRegistry, detect_port, detect_rebuild, wait_reachable


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_detect_port_patterns():
    assert detect_port("  VITE v5.0.0  ready in 300 ms\n  ➜  Local:   http://localhost:5174/\n") == 5174
    assert detect_port("Server running at http://127.0.0.1:8080") == 8080
    assert detect_port("Listening on 0.0.0.0:4000") == 4000
    assert detect_port("PORT=3333") == 3333
    assert detect_port("no port mentioned here") is None
    assert detect_port("") is None


def test_detect_port_rejects_privileged_ports():
    assert detect_port("port=80") is None


def test_detect_rebuild():
    assert detect_rebuild("✓ built in 1.21s")
    assert detect_rebuild("[vite] hmr update /src/App.tsx")
    assert detect_rebuild("webpack compiled successfully")
    assert not detect_rebuild("npm WARN deprecated")
    assert not detect_rebuild("")


def test_reserved_port_never_registered():
    reg = PortRegistry(reserved=(3001, 5173))
    assert reg.register("ws", 3001) is False
    assert reg.get("ws") is None
    assert reg.preview_target("ws") is None


def test_register_reports_only_changes():
    reg = PortRegistry(reserved=(3001,))
    assert reg.register("ws", 5174) is True
    assert reg.register("ws", 5174) is False
    assert reg.register("ws", 5175) is True
    assert reg.get("ws") == 5175
    assert reg.get("other") is None


def test_entries_expire_after_ttl():
    clock = FakeClock()
    reg = PortRegistry(ttl=60, reserved=(), clock=clock)
    reg.register("ws", 5174)
    clock.now += 59
    assert reg.get("ws") == 5174
    clock.now += 2
    assert reg.get("ws") is None
    # expired entry counts as new again
    assert reg.register("ws", 5174) is True


def test_redetection_refreshes_ttl():
    clock = FakeClock()
    reg = PortRegistry(ttl=60, reserved=(), clock=clock)
    reg.register("ws", 5174)
    clock.now += 50
    reg.register("ws", 5174)
    clock.now += 50
    assert reg.get("ws") == 5174


def test_preview_target_and_host():
    reg = PortRegistry(reserved=())
    reg.register("ws", 5174)
    assert reg.preview_target("ws") == ("127.0.0.1", 5174)
    reg.set_host("ws", "::1")
    assert reg.preview_target("ws") == ("::1", 5174)
    reg.clear("ws")
    assert reg.preview_target("ws") is None


def test_detect_and_register():
    reg = PortRegistry(reserved=(3001,))
    assert reg.detect_and_register("ws", "Local: http://localhost:5174/") == 5174
    assert reg.detect_and_register("ws", "Local: http://localhost:5174/") is None
    assert reg.detect_and_register("ws", "Local: http://localhost:3001/") is None
    assert reg.get("ws") == 5174


def test_wait_reachable_finds_listening_port():
    async def run():
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            return await wait_reachable(port, 3.0)
        finally:
            server.close()
            await server.wait_closed()

    assert asyncio.run(run()) == "127.0.0.1"


def test_wait_reachable_times_out():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]
    assert asyncio.run(wait_reachable(port, 0.5)) is None
