from PySide6.QtCore import QModelIndex, QSortFilterProxyModel, Qt

from canlens.trace.entry import TraceColumn

FILTER_COLUMNS = (
    TraceColumn.NAME,
    TraceColumn.ID,
    TraceColumn.CHN,
    TraceColumn.EVENT_TYPE,
    TraceColumn.DIR,
    TraceColumn.DATA,
)
NUMERIC_COLUMNS = (TraceColumn.TIME, TraceColumn.CHN, TraceColumn.DLC)


def _number(text, base: int = 10) -> float:
    try:
        if base == 16:
            return int(str(text).rstrip("hH"), 16)
        return float(text)
    except (TypeError, ValueError):
        return float("-inf")


class TraceFilterProxy(QSortFilterProxyModel):
    """Text filter and column sort over the frame rows of a ``TraceStore``.

    Signal rows are never filtered on their own: they follow their frame.
    """

    def __init__(self, parent=None):
        super().__init__(parent)
        self._filter_text = ""
        self.setDynamicSortFilter(True)

    @property
    def filter_text(self) -> str:
        return self._filter_text

    def set_filter_text(self, text: str):
        text = text.strip().lower()
        if text == self._filter_text:
            return
        self._filter_text = text
        self.invalidateFilter()

    def filterAcceptsRow(self, source_row, source_parent):
        if source_parent.isValid() or not self._filter_text:
            return True
        model = self.sourceModel()
        for column in FILTER_COLUMNS:
            value = model.data(model.index(source_row, column, source_parent), Qt.DisplayRole)
            if value and self._filter_text in str(value).lower():
                return True
        return False

    def lessThan(self, left, right):
        if left.parent().isValid():
            return left.row() < right.row()

        column = left.column()
        model = self.sourceModel()
        lvalue = model.data(left, Qt.DisplayRole)
        rvalue = model.data(right, Qt.DisplayRole)
        if column in NUMERIC_COLUMNS:
            return _number(lvalue) < _number(rvalue)
        if column == TraceColumn.ID:
            return _number(lvalue, 16) < _number(rvalue, 16)
        return str(lvalue or "").lower() < str(rvalue or "").lower()

    def sort_by_column(self, column: int, ascending: bool = True):
        self.sort(column, Qt.AscendingOrder if ascending else Qt.DescendingOrder)

    def clear_sort(self):
        """Return to source (arrival) order."""
        self.sort(-1)

    def source_row(self, row: int) -> int:
        return self.mapToSource(self.index(row, 0, QModelIndex())).row()
