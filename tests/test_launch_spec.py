import pytest

from dillingerCore.config import DillingerConfig
from dillingerCore.exceptions import ValidationError
from dillingerCore.launch_spec import (
    build_debug_spec,
    build_install_spec,
    build_spec,
    detect_host_capabilities,
    validate_resources,
)
from dillingerCore.models import (
    DeviceKind,
    DisplayMethod,
    Game,
    HostCapabilities,
    Installation,
    InstallStatus,
    LaunchMode,
    Platform,
    PlatformType,
)


def mounts_by_target(spec):
    return {m.target: m for m in spec.mounts}


class TestValidateResources:

    def test_accepts_common_limits(self):
        limits = validate_resources(2, "4G")
        assert limits.cpu == 2.0
        assert limits.memory == "4g"
        assert limits.nano_cpus == 2_000_000_000

    @pytest.mark.parametrize("memory", ["lots", "4gb", "", "-1g"])
    def test_rejects_malformed_memory(self, memory):
        with pytest.raises(ValidationError):
            validate_resources(1, memory)

    @pytest.mark.parametrize("cpu", [0, -1, "2", True])
    def test_rejects_bad_cpu(self, cpu):
        with pytest.raises(ValidationError):
            validate_resources(cpu, "1g")


class TestBuildSpec:

    @pytest.fixture
    def native_platform(self):
        return Platform(id="linux-native", name="Linux", type=PlatformType.NATIVE)

    @pytest.fixture
    def native_game(self):
        return Game(
            id="quake",
            title="Quake",
            file_path="/installed/quake/bin/quake.x86_64",
            installation=Installation(status=InstallStatus.INSTALLED, install_path="/installed/quake"),
        )

    @pytest.fixture
    def x11_host(self):
        return HostCapabilities(display=":0", xauthority="/home/me/.Xauthority", has_gpu=True)

    def test_native_game_command(self, native_game, native_platform, headless_host):
        """Native games run their executable from the read-only /game mount"""
        spec = build_spec(native_game, native_platform, LaunchMode.LOCAL, headless_host, session_id="s1")

        assert spec.command == ["/game/bin/quake.x86_64"]
        game_mount = mounts_by_target(spec)["/game"]
        assert game_mount.source == "/installed/quake"
        assert game_mount.read_only
        assert spec.name == "dillinger-session-s1"
        assert spec.image == DillingerConfig().images.native
        assert spec.environment["GAME_ID"] == "quake"
        assert spec.environment["SESSION_ID"] == "s1"
        assert spec.labels["dillinger.purpose"] == "play"

    def test_x11_display(self, native_game, native_platform, x11_host):
        spec = build_spec(native_game, native_platform, LaunchMode.LOCAL, x11_host, session_id="s1")

        assert spec.display.method == DisplayMethod.X11
        assert spec.environment["DISPLAY"] == ":0"
        assert "/tmp/.X11-unix" in mounts_by_target(spec)
        assert mounts_by_target(spec)["/home/gameuser/.Xauthority"].read_only
        assert spec.ipc_mode == "host"
        assert DeviceKind.GPU in spec.device_kinds()
        assert "LIBGL_ALWAYS_SOFTWARE" not in spec.environment

    def test_headless_without_display(self, native_game, native_platform, headless_host):
        """No display server and no GPU degrades to headless software rendering"""
        spec = build_spec(native_game, native_platform, LaunchMode.LOCAL, headless_host, session_id="s1")

        assert spec.display.method == DisplayMethod.HEADLESS
        assert spec.environment["DILLINGER_HEADLESS"] == "1"
        assert spec.environment["LIBGL_ALWAYS_SOFTWARE"] == "1"
        assert spec.devices == []

    def test_streaming_mode_is_headless(self, native_game, native_platform, x11_host):
        config = DillingerConfig()
        config.streaming.width = 1280
        config.streaming.height = 720
        spec = build_spec(
            native_game, native_platform, LaunchMode.STREAMING, x11_host, session_id="s1", defaults=config
        )

        assert spec.display.method == DisplayMethod.HEADLESS
        assert spec.environment["DISPLAY_WIDTH"] == "1280"
        assert spec.environment["DISPLAY_HEIGHT"] == "720"
        assert "DISPLAY" not in spec.environment

    def test_wayland_display(self, native_game, native_platform):
        host = HostCapabilities(wayland_display="wayland-0", xdg_runtime_dir="/run/user/1000")
        spec = build_spec(native_game, native_platform, LaunchMode.LOCAL, host, session_id="s1")

        assert spec.display.method == DisplayMethod.WAYLAND
        assert spec.environment["WAYLAND_DISPLAY"] == "wayland-0"
        assert mounts_by_target(spec)["/run/user/1000/wayland-0"].source == "/run/user/1000/wayland-0"

    def test_input_and_audio_devices(self, native_game, native_platform):
        host = HostCapabilities(
            has_input=True,
            joysticks=["/dev/input/js0"],
            has_sound=True,
            pulse_socket="/run/user/1000/pulse",
        )
        spec = build_spec(native_game, native_platform, LaunchMode.LOCAL, host, session_id="s1")
        paths = [d.host_path for d in spec.devices]

        assert "/dev/input" in paths
        assert "/dev/input/js0" in paths
        assert "/dev/snd" in paths
        assert spec.environment["PULSE_SERVER"] == "unix:/run/user/1000/pulse/native"

    def test_device_toggles_disable_passthrough(self, native_game, native_platform):
        native_game.settings.devices.audio = False
        native_game.settings.devices.input = False
        host = HostCapabilities(has_input=True, has_sound=True)
        spec = build_spec(native_game, native_platform, LaunchMode.LOCAL, host, session_id="s1")

        assert spec.devices == []

    def test_resource_override(self, native_game, native_platform, headless_host):
        native_game.settings.resources.memory = "8g"
        spec = build_spec(native_game, native_platform, LaunchMode.LOCAL, headless_host, session_id="s1")
        kwargs = spec.to_docker_kwargs()

        assert kwargs["mem_limit"] == "8g"
        assert kwargs["nano_cpus"] == 2_000_000_000

    def test_invalid_resources_rejected(self, native_game, native_platform, headless_host):
        native_game.settings.resources.memory = "plenty"
        with pytest.raises(ValidationError):
            build_spec(native_game, native_platform, LaunchMode.LOCAL, headless_host, session_id="s1")

    def test_native_without_path_rejected(self, native_platform, headless_host):
        with pytest.raises(ValidationError):
            build_spec(Game(id="x", title="X"), native_platform, LaunchMode.LOCAL, headless_host)

    def test_wine_game(self, headless_host):
        """Wine games get the prefix mount, wine env and a drive_c command"""
        platform = Platform(
            id="windows-wine",
            name="Windows",
            type=PlatformType.WINE,
            default_dll_overrides={"d3d9": "n,b"},
        )
        game = Game(
            id="fallout",
            title="Fallout",
            installation=Installation(status=InstallStatus.INSTALLED, install_path="/installed/fallout"),
        )
        game.settings.launch.command = "C:\\Games\\Fallout\\fallout.exe"
        game.settings.wine.dll_overrides = {"dxgi": "n"}
        game.settings.wine.version = "wine-9.0"

        spec = build_spec(game, platform, LaunchMode.LOCAL, headless_host, session_id="s1")

        assert spec.command == ["wine", "/wineprefix/drive_c/Games/Fallout/fallout.exe"]
        assert mounts_by_target(spec)["/wineprefix"].source == "/installed/fallout"
        assert spec.environment["WINEPREFIX"] == "/wineprefix"
        assert spec.environment["WINEDLLOVERRIDES"] == "d3d9=n,b;dxgi=n"
        assert spec.environment["WINE_VERSION_ID"] == "wine-9.0"
        assert spec.wine.arch == "win64"

    def test_emulator_game(self, headless_host):
        platform = Platform(
            id="snes", name="SNES", type=PlatformType.EMULATOR, emulator_core="snes9x"
        )
        game = Game(id="mario", title="Super Mario World", file_path="/roms/snes/smw.sfc")
        spec = build_spec(game, platform, LaunchMode.LOCAL, headless_host, session_id="s1")

        assert mounts_by_target(spec)["/roms"].source == "/roms/snes"
        assert spec.environment["ROM_PATH"] == "/roms/smw.sfc"
        assert spec.environment["RETROARCH_CORE"] == "snes9x"
        assert spec.image == DillingerConfig().images.emulator

    def test_game_environment_wins(self, native_game, headless_host):
        platform = Platform(id="p", name="P", default_environment={"FOO": "platform", "BAR": "1"})
        native_game.settings.launch.environment = {"FOO": "game"}
        spec = build_spec(native_game, platform, LaunchMode.LOCAL, headless_host, session_id="s1")

        assert spec.environment["FOO"] == "game"
        assert spec.environment["BAR"] == "1"


class TestInstallAndDebugSpecs:

    def test_wine_install_spec(self, headless_host):
        platform = Platform(id="windows-wine", name="Windows", type=PlatformType.WINE)
        game = Game(id="fallout", title="Fallout")
        spec = build_install_spec(
            game,
            platform,
            "/cache/setup_fallout.exe",
            "/installed/fallout",
            headless_host,
            session_id="i1",
        )

        assert spec.name == "dillinger-install-i1"
        assert spec.command == ["wine", "/installer/setup_fallout.exe"]
        assert mounts_by_target(spec)["/installer/setup_fallout.exe"].read_only
        assert mounts_by_target(spec)["/wineprefix"].source == "/installed/fallout"
        assert spec.environment["INSTALL_TARGET"] == "/wineprefix/drive_c"
        assert spec.labels["dillinger.purpose"] == "install"

    def test_native_install_spec(self, headless_host):
        platform = Platform(id="linux-native", name="Linux")
        game = Game(id="quake", title="Quake")
        spec = build_install_spec(
            game,
            platform,
            "/cache/quake.sh",
            "/installed/quake",
            headless_host,
            session_id="i1",
            installer_args=["--silent", "--target=/install"],
        )

        assert spec.command == ["bash", "-lc", "/installer/quake.sh --silent --target=/install"]
        assert mounts_by_target(spec)["/install"].source == "/installed/quake"
        assert spec.environment["INSTALLER_ARGS"] == "--silent --target=/install"

    def test_install_requires_paths(self, headless_host):
        platform = Platform(id="linux-native", name="Linux")
        with pytest.raises(ValidationError):
            build_install_spec(Game(id="q", title="Q"), platform, "", "/installed/q", headless_host, session_id="i1")

    def test_debug_spec_idles(self, headless_host):
        platform = Platform(id="windows-wine", name="Windows", type=PlatformType.WINE)
        game = Game(id="fallout", title="Fallout", file_path="/installed/fallout/drive_c/fallout.exe")
        spec = build_debug_spec(game, platform, LaunchMode.LOCAL, headless_host, session_id="d1")
        kwargs = spec.to_docker_kwargs()

        assert spec.name == "dillinger-debug-d1"
        assert kwargs["entrypoint"] == ["/bin/bash", "-c", "tail -f /dev/null"]
        assert "command" not in kwargs
        assert kwargs["tty"] and kwargs["stdin_open"]
        assert spec.environment["WINEDEBUG"] == "warn+all"


class TestDetectHostCapabilities:

    def test_reads_display_from_environment(self):
        host = detect_host_capabilities({"DISPLAY": ":1"})
        assert host.display == ":1"

    def test_missing_wayland_socket_ignored(self, tmp_path):
        host = detect_host_capabilities({"WAYLAND_DISPLAY": "wayland-9", "XDG_RUNTIME_DIR": str(tmp_path)})
        assert host.wayland_display is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
