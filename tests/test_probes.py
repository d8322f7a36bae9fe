"""
Tests for the system probes (kernel, bootloader, governor, power, hardware).

Every probe reads from a sysroot, so these tests build small fake trees
under tmp_path instead of touching the real host.
"""

from pathlib import Path

import pytest

from nephyra import keys
from nephyra.config import ConfigError, EngineConfig
from nephyra.facts import Confidence, ProbeFailureKind, ProbeResult
from nephyra.probes import (
    PROBES,
    BootloaderProbe,
    GovernorProbe,
    HardwareProbe,
    KernelProbe,
    PowerProbe,
    build_probes,
)
from nephyra.probes.bootloader import kernel_from_image, parse_grub_menu, read_grub_default
from nephyra.probes.kernel import headers_package_name, kernel_package_name
from nephyra.probes.power import recommend_governor


# =============================================================================
# TEST FIXTURES
# =============================================================================

def write(root: Path, relative: str, content: str = "") -> Path:
    """Helper to create a file (and its parents) under a fake sysroot."""
    path = root / relative.lstrip("/")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


def facts_by_key(result: ProbeResult) -> dict:
    return {fact.key: fact for fact in result.facts}


def only_pacman(name):
    return "/usr/bin/pacman" if name == "pacman" else None


# =============================================================================
# KERNEL PROBE TESTS
# =============================================================================

class TestKernelProbe:
    """Test kernel observation."""

    def make_tree(self, root: Path) -> None:
        write(root, "/proc/sys/kernel/osrelease", "6.6.1-lts\n")
        (root / "lib/modules/6.6.1-lts/build").mkdir(parents=True)
        (root / "lib/modules/6.8.0-zen").mkdir(parents=True)

    def test_observes_active_and_installed(self, tmp_path):
        self.make_tree(tmp_path)

        result = KernelProbe(tmp_path, which=only_pacman).run(timeout=5)
        facts = facts_by_key(result)

        assert result.ok
        assert facts[keys.KERNEL_ACTIVE_VERSION].value.data.raw == "6.6.1-lts"
        assert [v.raw for v in facts[keys.KERNEL_INSTALLED_VERSIONS].value.data] == [
            "6.6.1-lts", "6.8.0-zen",
        ]
        assert facts[keys.KERNEL_HEADERS_INSTALLED].value.data is True
        assert facts[keys.KERNEL_HEADERS_PACKAGE].value.data == "linux-lts-headers"
        assert facts[keys.KERNEL_HEADERS_PACKAGE].confidence == Confidence.INFERRED
        assert facts[keys.KERNEL_MODULES_NVIDIA].value.data is False

    def test_missing_headers_and_nvidia_module(self, tmp_path):
        write(tmp_path, "/proc/sys/kernel/osrelease", "6.6.1-lts")
        write(tmp_path, "/lib/modules/6.6.1-lts/extramodules/nvidia.ko.zst", "")

        facts = facts_by_key(KernelProbe(tmp_path, which=only_pacman).run(timeout=5))

        assert facts[keys.KERNEL_HEADERS_INSTALLED].value.data is False
        assert facts[keys.KERNEL_MODULES_NVIDIA].value.data is True

    def test_usr_lib_modules(self, tmp_path):
        write(tmp_path, "/proc/sys/kernel/osrelease", "6.8.0-zen")
        (tmp_path / "usr/lib/modules/6.8.0-zen").mkdir(parents=True)

        result = KernelProbe(tmp_path, which=only_pacman).run(timeout=5)

        assert result.ok

    def test_unreadable_release_gives_partial_failure(self, tmp_path):
        (tmp_path / "lib/modules/6.8.0-zen").mkdir(parents=True)

        result = KernelProbe(tmp_path, which=only_pacman).run(timeout=5)

        assert result.failure.kind == ProbeFailureKind.IO_ERROR
        assert keys.KERNEL_INSTALLED_VERSIONS in facts_by_key(result)
        assert keys.KERNEL_ACTIVE_VERSION not in facts_by_key(result)

    def test_package_name_heuristics(self):
        assert kernel_package_name("6.15.2-2-cachyos-eevdf-lto") == "linux-cachyos-eevdf-lto"
        assert kernel_package_name("6.6.1") == "linux-6.6.1"
        assert headers_package_name("6.6.1-lts") == "linux-lts-headers"
        assert headers_package_name("6.1.0-9-amd64", "apt") == "linux-headers-6.1.0-9-amd64"
        assert headers_package_name("6.5.6-300.fc39.x86_64", "dnf") == "kernel-devel"
        assert headers_package_name("6.6.1-0-lts", "apk") == "linux-headers"


# =============================================================================
# BOOTLOADER PROBE TESTS
# =============================================================================

GRUB_CFG = """\
set default="0"
menuentry 'Arch Linux, with Linux 6.8.0-zen' --class arch $menuentry_id_option 'gnulinux-zen' {
	linux	/vmlinuz-6.8.0-zen root=UUID=abc rw
	initrd	/initramfs-6.8.0-zen.img
}
submenu 'Advanced options' $menuentry_id_option 'gnulinux-advanced' {
	menuentry 'Arch Linux, with Linux 6.6.1-lts' $menuentry_id_option 'gnulinux-lts' {
		linux	/vmlinuz-6.6.1-lts root=UUID=abc rw
	}
}
"""


GRUB_MKCONFIG_CFG = """\
#
# DO NOT EDIT THIS FILE
#
# It is automatically generated by grub-mkconfig using templates
# from /etc/grub.d and settings from /etc/default/grub
#

### BEGIN /etc/grub.d/00_header ###
if [ -s $prefix/grubenv ]; then
  set have_grubenv=true
  load_env
fi
if [ "${next_entry}" ] ; then
   set default="${next_entry}"
   set next_entry=
   save_env next_entry
   set boot_once=true
else
   set default="0"
fi

if [ x"${feature_menuentry_id}" = xy ]; then
  menuentry_id_option="--id"
else
  menuentry_id_option=""
fi

export menuentry_id_option

function load_video {
  if [ x$feature_all_video_module = xy ]; then
    insmod all_video
  fi
}
### END /etc/grub.d/00_header ###

### BEGIN /etc/grub.d/10_linux ###
menuentry 'Debian GNU/Linux' --class debian --class gnu-linux --class gnu --class os $menuentry_id_option 'gnulinux-simple-1234' {
	load_video
	insmod gzio
	echo	'Loading Linux 6.1.0-18-amd64 ...'
	linux	/boot/vmlinuz-6.1.0-18-amd64 root=UUID=1234 ro quiet
	initrd	/boot/initrd.img-6.1.0-18-amd64
}
submenu 'Advanced options for Debian GNU/Linux' $menuentry_id_option 'gnulinux-advanced-1234' {
	menuentry 'Debian GNU/Linux, with Linux 6.1.0-17-amd64' --class debian $menuentry_id_option 'gnulinux-6.1.0-17-amd64-advanced-1234' {
		linux	/boot/vmlinuz-6.1.0-17-amd64 root=UUID=1234 ro quiet
	}
}
### END /etc/grub.d/10_linux ###
"""


class TestBootloaderProbe:
    """Test bootloader detection and default entry parsing."""

    def test_no_bootloader(self, tmp_path):
        result = BootloaderProbe(tmp_path).run(timeout=5)
        facts = facts_by_key(result)

        assert result.ok
        assert facts[keys.BOOT_LOADER_TYPE].value.data == "unknown"
        assert facts[keys.BOOT_LOADER_INSPECTABLE].value.data is False
        assert keys.BOOT_DEFAULT_ENTRY not in facts

    def test_grub_default_index(self, tmp_path):
        write(tmp_path, "/boot/grub/grub.cfg", GRUB_CFG)

        facts = facts_by_key(BootloaderProbe(tmp_path).run(timeout=5))

        assert facts[keys.BOOT_LOADER_TYPE].value.data == "grub"
        assert facts[keys.BOOT_LOADER_CONFIG].value.data == "/boot/grub/grub.cfg"
        assert facts[keys.BOOT_DEFAULT_ENTRY].value.data == "0"
        assert facts[keys.BOOT_DEFAULT_KERNEL].value.data.raw == "6.8.0-zen"

    def test_grub_mkconfig_output_skips_next_entry(self, tmp_path):
        write(tmp_path, "/boot/grub/grub.cfg", GRUB_MKCONFIG_CFG)

        facts = facts_by_key(BootloaderProbe(tmp_path).run(timeout=5))

        assert facts[keys.BOOT_DEFAULT_ENTRY].value.data == "0"
        assert facts[keys.BOOT_DEFAULT_KERNEL].value.data.raw == "6.1.0-18-amd64"

    def test_grub_mkconfig_saved_default(self, tmp_path):
        cfg = GRUB_MKCONFIG_CFG.replace('set default="0"', 'set default="${saved_entry}"')
        write(tmp_path, "/boot/grub/grub.cfg", cfg)
        write(tmp_path, "/boot/grub/grubenv",
              "saved_entry=gnulinux-6.1.0-17-amd64-advanced-1234\nnext_entry=\n")

        facts = facts_by_key(BootloaderProbe(tmp_path).run(timeout=5))

        assert facts[keys.BOOT_DEFAULT_KERNEL].value.data.raw == "6.1.0-17-amd64"

    def test_grub_only_next_entry_has_no_default(self):
        cfg = 'if [ "${next_entry}" ] ; then\n   set default="${next_entry}"\nfi\n'
        assert read_grub_default(cfg, None) is None

    def test_grub_saved_entry(self, tmp_path):
        write(tmp_path, "/boot/grub/grub.cfg", GRUB_CFG.replace('set default="0"', 'set default="${saved_entry}"'))
        write(tmp_path, "/boot/grub/grubenv", "# GRUB Environment Block\nsaved_entry=gnulinux-lts\n")

        facts = facts_by_key(BootloaderProbe(tmp_path).run(timeout=5))

        assert facts[keys.BOOT_DEFAULT_ENTRY].value.data == "gnulinux-lts"
        assert facts[keys.BOOT_DEFAULT_KERNEL].value.data.raw == "6.6.1-lts"

    def test_grub_without_default(self, tmp_path):
        write(tmp_path, "/boot/grub/grub.cfg", GRUB_CFG.replace('set default="0"\n', ""))

        result = BootloaderProbe(tmp_path).run(timeout=5)
        facts = facts_by_key(result)

        assert result.ok
        assert facts[keys.BOOT_LOADER_TYPE].value.data == "grub"
        assert keys.BOOT_DEFAULT_ENTRY not in facts

    def test_grub_menu_parsing(self):
        entries = parse_grub_menu(GRUB_CFG)

        assert [e.entry_id for e in entries] == ["gnulinux-zen", "gnulinux-lts"]
        assert entries[0].top_index == 0
        assert entries[1].top_index is None
        assert entries[1].image == "/vmlinuz-6.6.1-lts"

    def test_grub_saved_without_grubenv(self):
        assert read_grub_default('set default="${saved_entry}"', None) is None

    def test_systemd_boot_explicit_default(self, tmp_path):
        write(tmp_path, "/boot/loader/loader.conf", "timeout 3\ndefault arch-zen.conf\n")
        write(tmp_path, "/boot/loader/entries/arch-zen.conf",
              "title Arch Linux (zen)\nversion 6.8.0-zen\nlinux /vmlinuz-linux-zen\n")
        write(tmp_path, "/boot/loader/entries/arch-lts.conf",
              "title Arch Linux (lts)\nlinux /vmlinuz-linux-lts\n")

        facts = facts_by_key(BootloaderProbe(tmp_path).run(timeout=5))

        assert facts[keys.BOOT_LOADER_TYPE].value.data == "systemd-boot"
        assert facts[keys.BOOT_DEFAULT_ENTRY].value.data == "arch-zen.conf"
        assert facts[keys.BOOT_DEFAULT_KERNEL].value.data.raw == "6.8.0-zen"

    def test_systemd_boot_implicit_default_is_inferred(self, tmp_path):
        write(tmp_path, "/boot/loader/loader.conf", "timeout 3\n")
        write(tmp_path, "/boot/loader/entries/a.conf", "title A\nlinux /vmlinuz-6.6.1-lts\n")
        write(tmp_path, "/boot/loader/entries/b.conf", "title B\nlinux /vmlinuz-linux\n")

        facts = facts_by_key(BootloaderProbe(tmp_path).run(timeout=5))

        assert facts[keys.BOOT_DEFAULT_ENTRY].value.data == "b.conf"
        assert facts[keys.BOOT_DEFAULT_ENTRY].confidence == Confidence.INFERRED
        assert keys.BOOT_DEFAULT_KERNEL not in facts

    def test_syslinux(self, tmp_path):
        write(tmp_path, "/boot/syslinux/syslinux.cfg",
              "DEFAULT arch\nLABEL arch\n    LINUX ../vmlinuz-6.6.1-lts\nLABEL fallback\n    LINUX ../vmlinuz-6.1.0\n")

        facts = facts_by_key(BootloaderProbe(tmp_path).run(timeout=5))

        assert facts[keys.BOOT_DEFAULT_ENTRY].value.data == "arch"
        assert facts[keys.BOOT_DEFAULT_KERNEL].value.data.raw == "6.6.1-lts"

    def test_refind(self, tmp_path):
        write(tmp_path, "/boot/efi/EFI/refind/refind.conf", 'timeout 20\ndefault_selection "vmlinuz-6.8.0-zen"\n')

        facts = facts_by_key(BootloaderProbe(tmp_path).run(timeout=5))

        assert facts[keys.BOOT_LOADER_TYPE].value.data == "refind"
        assert facts[keys.BOOT_DEFAULT_KERNEL].value.data.raw == "6.8.0-zen"

    def test_u_boot_not_inspectable(self, tmp_path):
        write(tmp_path, "/boot/boot.scr", "binary")

        facts = facts_by_key(BootloaderProbe(tmp_path).run(timeout=5))

        assert facts[keys.BOOT_LOADER_TYPE].value.data == "u-boot"
        assert facts[keys.BOOT_LOADER_INSPECTABLE].value.data is False
        assert keys.BOOT_DEFAULT_ENTRY not in facts

    def test_grub_detected_before_systemd_boot(self, tmp_path):
        write(tmp_path, "/boot/grub/grub.cfg", GRUB_CFG)
        write(tmp_path, "/boot/loader/loader.conf", "default arch.conf\n")

        facts = facts_by_key(BootloaderProbe(tmp_path).run(timeout=5))

        assert facts[keys.BOOT_LOADER_TYPE].value.data == "grub"

    def test_kernel_from_image(self):
        assert kernel_from_image("/boot/vmlinuz-6.8.0-zen").raw == "6.8.0-zen"
        assert kernel_from_image("/vmlinuz-linux-zen") is None
        assert kernel_from_image("/EFI/arch/linux.efi") is None


# =============================================================================
# GOVERNOR PROBE TESTS
# =============================================================================

class TestGovernorProbe:
    """Test cpufreq observation."""

    def make_cpu(self, root: Path, cpu: int, governor: str) -> None:
        base = f"/sys/devices/system/cpu/cpu{cpu}/cpufreq"
        write(root, f"{base}/scaling_governor", f"{governor}\n")
        write(root, f"{base}/scaling_available_governors", "performance powersave\n")
        write(root, f"{base}/scaling_driver", "intel_pstate\n")

    def test_reads_governor(self, tmp_path):
        self.make_cpu(tmp_path, 0, "powersave")
        self.make_cpu(tmp_path, 1, "powersave")

        result = GovernorProbe(tmp_path).run(timeout=5)
        facts = facts_by_key(result)

        assert result.ok
        assert facts[keys.POWER_GOVERNOR_CURRENT].value.data == "powersave"
        assert facts[keys.POWER_GOVERNOR_AVAILABLE].value.data == ("performance", "powersave")
        assert facts[keys.POWER_CPUFREQ_DRIVER].value.data == "intel_pstate"

    def test_mixed_governors_use_majority(self, tmp_path):
        self.make_cpu(tmp_path, 0, "performance")
        self.make_cpu(tmp_path, 1, "powersave")
        self.make_cpu(tmp_path, 2, "powersave")

        facts = facts_by_key(GovernorProbe(tmp_path).run(timeout=5))

        assert facts[keys.POWER_GOVERNOR_CURRENT].value.data == "powersave"

    def test_no_cpufreq(self, tmp_path):
        result = GovernorProbe(tmp_path).run(timeout=5)

        assert result.failure.kind == ProbeFailureKind.IO_ERROR
        assert result.expected_keys == {keys.POWER_GOVERNOR_CURRENT}


# =============================================================================
# POWER PROBE TESTS
# =============================================================================

class TestPowerProbe:
    """Test power source observation and governor recommendation."""

    def test_recommend_on_battery(self):
        assert recommend_governor(False, "performance") == "powersave"

    def test_recommend_on_ac_by_workload(self):
        assert recommend_governor(True, "performance") == "performance"
        assert recommend_governor(True, "balanced") == "schedutil"
        assert recommend_governor(True, "powersave") == "powersave"

    def test_recommend_falls_back_to_available(self):
        assert recommend_governor(True, "balanced", ["performance", "powersave"]) == "powersave"
        assert recommend_governor(True, "balanced", ["ondemand", "performance"]) == "ondemand"

    def test_laptop_on_battery(self, tmp_path):
        write(tmp_path, "/sys/class/power_supply/AC/type", "Mains\n")
        write(tmp_path, "/sys/class/power_supply/AC/online", "0\n")
        write(tmp_path, "/sys/class/power_supply/BAT0/type", "Battery\n")
        write(tmp_path, "/sys/class/power_supply/BAT0/capacity", "80\n")
        write(tmp_path, "/sys/class/power_supply/BAT0/status", "Discharging\n")
        write(tmp_path, "/sys/class/power_supply/BAT0/health", "Good\n")

        result = PowerProbe(tmp_path, workload_class="performance").run(timeout=5)
        facts = facts_by_key(result)

        assert result.ok
        assert facts[keys.POWER_AC_ONLINE].value.data is False
        assert facts[keys.POWER_AC_ONLINE].confidence == Confidence.CERTAIN
        assert facts[keys.POWER_BATTERY_PRESENT].value.data is True
        assert facts[keys.POWER_BATTERY_CAPACITY].value.data == 80
        assert facts[keys.POWER_BATTERY_STATUS].value.data == "discharging"
        assert facts[keys.POWER_BATTERY_HEALTH].value.data == "good"
        assert facts[keys.POWER_PROFILE_RECOMMENDED].value.data == "powersave"
        assert facts[keys.POWER_PROFILE_RECOMMENDED].confidence == Confidence.INFERRED

    def test_desktop_without_power_supply(self, tmp_path):
        facts = facts_by_key(PowerProbe(tmp_path, workload_class="performance").run(timeout=5))

        assert facts[keys.POWER_AC_ONLINE].value.data is True
        assert facts[keys.POWER_AC_ONLINE].confidence == Confidence.INFERRED
        assert facts[keys.POWER_BATTERY_PRESENT].value.data is False
        assert facts[keys.POWER_PROFILE_RECOMMENDED].value.data == "performance"

    def test_peripheral_battery_is_ignored(self, tmp_path):
        write(tmp_path, "/sys/class/power_supply/hidpp_battery_0/type", "Battery\n")
        write(tmp_path, "/sys/class/power_supply/hidpp_battery_0/scope", "Device\n")
        write(tmp_path, "/sys/class/power_supply/hidpp_battery_0/status", "Discharging\n")

        facts = facts_by_key(PowerProbe(tmp_path, workload_class="performance").run(timeout=5))

        assert facts[keys.POWER_AC_ONLINE].value.data is True
        assert facts[keys.POWER_BATTERY_PRESENT].value.data is False
        assert keys.POWER_BATTERY_STATUS not in facts
        assert facts[keys.POWER_PROFILE_RECOMMENDED].value.data == "performance"

    def test_recommendation_respects_available_governors(self, tmp_path):
        write(tmp_path, "/sys/devices/system/cpu/cpu0/cpufreq/scaling_available_governors",
              "performance powersave\n")

        facts = facts_by_key(PowerProbe(tmp_path, workload_class="balanced").run(timeout=5))

        assert facts[keys.POWER_PROFILE_RECOMMENDED].value.data == "powersave"


# =============================================================================
# HARDWARE PROBE TESTS
# =============================================================================

class TestHardwareProbe:
    """Test CPU, memory, GPU and NVIDIA driver observation."""

    def make_tree(self, root: Path) -> None:
        write(root, "/proc/cpuinfo", "processor\t: 0\nmodel name\t: AMD Ryzen 7 5800X 8-Core Processor\n")
        write(root, "/proc/meminfo", "MemTotal:       16314396 kB\nMemAvailable:    8000000 kB\n")
        write(root, "/sys/bus/pci/devices/0000:01:00.0/class", "0x030000\n")
        write(root, "/sys/bus/pci/devices/0000:01:00.0/vendor", "0x10de\n")
        write(root, "/sys/bus/pci/devices/0000:00:14.0/class", "0x0c0330\n")
        write(root, "/sys/bus/pci/devices/0000:00:14.0/vendor", "0x8086\n")

    def test_observes_hardware(self, tmp_path):
        self.make_tree(tmp_path)
        write(tmp_path, "/proc/modules", "nvidia_drm 73728 2 - Live 0x0\nnvidia 54353920 1 nvidia_drm, Live 0x0\n")
        write(tmp_path, "/etc/modprobe.d/nvidia.conf", "options nvidia-drm modeset=1\n")

        result = HardwareProbe(tmp_path).run(timeout=5)
        facts = facts_by_key(result)

        assert result.ok
        assert facts[keys.HW_CPU_MODEL].value.data == "AMD Ryzen 7 5800X 8-Core Processor"
        assert facts[keys.HW_MEMORY_TOTAL_KIB].value.data == 16314396
        assert facts[keys.HW_MEMORY_AVAILABLE_KIB].value.data == 8000000
        assert facts[keys.HW_GPU_VENDORS].value.data == ("nvidia",)
        assert facts[keys.DRIVER_NVIDIA_LOADED].value.data is True
        assert facts[keys.DRIVER_NVIDIA_CONFIGURED].value.data is True

    def test_blacklist_is_not_configuration(self, tmp_path):
        self.make_tree(tmp_path)
        write(tmp_path, "/proc/modules", "")
        write(tmp_path, "/etc/modprobe.d/blacklist.conf", "blacklist nvidia\n")

        facts = facts_by_key(HardwareProbe(tmp_path).run(timeout=5))

        assert facts[keys.DRIVER_NVIDIA_CONFIGURED].value.data is False
        assert facts[keys.DRIVER_NVIDIA_LOADED].value.data is False

    def test_dkms_source_counts_as_configured(self, tmp_path):
        self.make_tree(tmp_path)
        (tmp_path / "usr/src/nvidia-550.67").mkdir(parents=True)

        facts = facts_by_key(HardwareProbe(tmp_path).run(timeout=5))

        assert facts[keys.DRIVER_NVIDIA_CONFIGURED].value.data is True

    def test_missing_cpuinfo(self, tmp_path):
        result = HardwareProbe(tmp_path).run(timeout=5)

        assert result.failure.kind == ProbeFailureKind.IO_ERROR


# =============================================================================
# REGISTRY TESTS
# =============================================================================

class TestRegistry:
    """Test build_probes."""

    def test_builds_all_in_priority_order(self, tmp_path):
        probes = build_probes(EngineConfig(sysroot=str(tmp_path)))

        assert [p.probe_id for p in probes] == list(PROBES)
        assert all(p.sysroot == tmp_path for p in probes)

    def test_power_probe_gets_workload(self):
        probes = build_probes(EngineConfig(workload_class="powersave"), only=["power"])

        assert probes[0].workload_class == "powersave"

    def test_subset(self):
        probes = build_probes(EngineConfig(), only=("packages", "kernel"))

        assert [p.probe_id for p in probes] == ["packages", "kernel"]

    def test_unknown_probe(self):
        with pytest.raises(ConfigError, match="network"):
            build_probes(EngineConfig(), only=["network"])
