class MArchiveError(Exception):
    """Base class for marchive-specific errors."""


# PSB structure
class FormatError(MArchiveError):
    """The byte source is not a well-formed PSB container."""


class BadMagic(FormatError):
    pass


class UnsupportedVersion(FormatError):
    pass


class ChecksumMismatch(FormatError):
    pass


class TruncatedInput(FormatError):
    pass


class InvalidTypeId(FormatError):
    pass


class OffsetOutOfRange(FormatError):
    pass


class FilterRequired(FormatError):
    pass


# Writing
class DuplicateKeyOnWrite(MArchiveError):
    pass


# MArchive codecs
class CodecError(MArchiveError):
    pass


class CodecMismatch(CodecError):
    pass
