from enum import IntEnum


class SheetResult(IntEnum):
    """Result codes reported by sheet operations. Capacity limits are codes, not exceptions."""
    OK = 0
    SHEET_LIMIT = 1
    OBJECT_LIMIT = 2
    LAST_SHEET = 3
    UNPLACEABLE = 4
    NOT_FOUND = 5

    def __str__(self):
        """Convert result code to human-readable message.

        Returns:
            Message string describing the result.
        """
        msgs = {
            0: "OK",
            1: "Sheet limit reached",
            2: "Object limit per sheet reached",
            3: "Cannot delete the only sheet",
            4: "Some items cannot fit on an empty sheet",
            5: "Object not found",
        }
        return msgs.get(self.value, f"Result {self.value}")


class GangSheetError(Exception):
    pass


class SheetIntegrityError(GangSheetError):
    """Orchestration state is corrupt (e.g. a sheet was not actually appended)."""


class ExportError(GangSheetError):
    pass


class ProductionValidationError(GangSheetError):
    """Production mode refused an export because objects leave the printable area."""


class ImageLoadError(GangSheetError):
    pass
