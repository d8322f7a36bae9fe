"""
Stable fact keys.

Keys name semantic slots, not sources: two probes reporting the same
slot use the same key and the Aggregator reconciles them.
"""

# Kernel
KERNEL_ACTIVE_VERSION = "kernel.active.version"
KERNEL_INSTALLED_VERSIONS = "kernel.installed.versions"
KERNEL_HEADERS_INSTALLED = "kernel.headers.installed"
KERNEL_HEADERS_PACKAGE = "kernel.headers.package"
KERNEL_MODULES_NVIDIA = "kernel.modules.nvidia"
KERNEL_PIN = "kernel.pin"

# Bootloader
BOOT_LOADER_TYPE = "boot.loader.type"
BOOT_LOADER_CONFIG = "boot.loader.config"
BOOT_LOADER_INSPECTABLE = "boot.loader.inspectable"
BOOT_DEFAULT_ENTRY = "boot.default.entry"
BOOT_DEFAULT_KERNEL = "boot.default.kernel"

# CPU frequency / power
POWER_GOVERNOR_CURRENT = "power.governor.current"
POWER_GOVERNOR_AVAILABLE = "power.governor.available"
POWER_CPUFREQ_DRIVER = "power.cpufreq.driver"
POWER_AC_ONLINE = "power.ac.online"
POWER_BATTERY_PRESENT = "power.battery.present"
POWER_BATTERY_CAPACITY = "power.battery.capacity"
POWER_BATTERY_STATUS = "power.battery.status"
POWER_BATTERY_HEALTH = "power.battery.health"
POWER_PROFILE_RECOMMENDED = "power.profile.recommended"

# Package manager
PKG_MANAGER = "pkg.manager"
PKG_ORPHANED = "pkg.orphaned"
PKG_UPDATES_COUNT = "pkg.updates.count"
PKG_HELD = "pkg.held"

# Hardware / drivers
HW_CPU_MODEL = "hw.cpu.model"
HW_MEMORY_TOTAL_KIB = "hw.memory.total_kib"
HW_MEMORY_AVAILABLE_KIB = "hw.memory.available_kib"
HW_GPU_VENDORS = "hw.gpu.vendors"
DRIVER_NVIDIA_CONFIGURED = "driver.nvidia.configured"
DRIVER_NVIDIA_LOADED = "driver.nvidia.loaded"
