"""Platform target definitions mapping each target to its toolchain."""

TARGETS = {
    # ARM
    "gba": {"arch": "arm", "m2c_arch": "arm"},
    "nds": {"arch": "arm", "m2c_arch": "arm"},
    "n3ds": {"arch": "arm", "m2c_arch": "arm"},
    # MIPS
    "n64": {"arch": "mips", "m2c_arch": "mips"},
    "ps1": {"arch": "mips", "m2c_arch": "mips"},
    "ps2": {"arch": "mips", "m2c_arch": "mipsel"},
    "psp": {"arch": "mips", "m2c_arch": "mipsel"},
    "irix": {"arch": "mips", "m2c_arch": None},
    # PowerPC
    "gc": {"arch": "ppc", "m2c_arch": "ppc"},
    "wii": {"arch": "ppc", "m2c_arch": "ppc"},
    # SuperH
    "saturn": {"arch": "sh", "m2c_arch": None},
    "dreamcast": {"arch": "sh", "m2c_arch": None},
    # Host-ish
    "win32": {"arch": "host", "m2c_arch": None},
    "switch": {"arch": "host", "m2c_arch": None},
    "android_x86": {"arch": "host", "m2c_arch": None},
}

# Candidate binaries are tried in order, first one found wins
TOOLCHAINS = {
    "arm": {
        "nm": ["arm-none-eabi-nm"],
        "objdump": ["arm-none-eabi-objdump"],
        "objdump_flags": ["-drz"],
        "compiler_type": "gcc",
    },
    "mips": {
        "nm": ["mips-linux-gnu-nm", "mips64-linux-gnu-nm", "mips64-elf-nm"],
        "objdump": ["mips-linux-gnu-objdump", "mips64-linux-gnu-objdump", "mips64-elf-objdump"],
        "objdump_flags": ["-drz", "-m", "mips:4300"],
        "compiler_type": "ido",
    },
    "ppc": {
        "nm": ["powerpc-eabi-nm"],
        "objdump": ["powerpc-eabi-objdump"],
        "objdump_flags": ["-dr", "-EB", "-mpowerpc", "-M", "broadway"],
        "compiler_type": "mwcc",
    },
    "sh": {
        "nm": ["sh-elf-nm"],
        "objdump": ["sh-elf-objdump"],
        "objdump_flags": ["-drz"],
        "compiler_type": "gcc",
    },
    "host": {
        "nm": ["nm"],
        "objdump": ["objdump"],
        "objdump_flags": ["-drz"],
        "compiler_type": "gcc",
    },
}

PLATFORM_TARGETS = tuple(TARGETS)


def get_toolchain(target):
    """Return the toolchain dict for a platform target (host toolchain if unknown)."""
    arch = TARGETS.get(target, {}).get("arch", "host")
    return TOOLCHAINS[arch]


def get_m2c_arch(target):
    """Return the m2c --target architecture, or None when m2c cannot handle it."""
    return TARGETS.get(target, {}).get("m2c_arch")
