from __future__ import annotations

from PySide6 import QtCore, QtWidgets


class LogPanel(QtWidgets.QPlainTextEdit):
	def __init__(self, parent=None):
		super().__init__(parent)
		self.setReadOnly(True)
		self.setMaximumBlockCount(2000)

	@QtCore.Slot(str)
	def append_log(self, message: str) -> None:
		self.appendPlainText(message)


class IncomingCallBanner(QtWidgets.QFrame):
	accept_clicked = QtCore.Signal()
	decline_clicked = QtCore.Signal()

	def __init__(self, parent=None):
		super().__init__(parent)
		self.setFrameShape(QtWidgets.QFrame.Shape.StyledPanel)

		self._label = QtWidgets.QLabel("")
		font = self._label.font()
		font.setBold(True)
		self._label.setFont(font)

		self.accept_btn = QtWidgets.QPushButton("Accept")
		self.decline_btn = QtWidgets.QPushButton("Decline")

		layout = QtWidgets.QHBoxLayout(self)
		layout.setContentsMargins(10, 6, 10, 6)
		layout.addWidget(self._label, 1)
		layout.addWidget(self.accept_btn)
		layout.addWidget(self.decline_btn)

		self.accept_btn.clicked.connect(self.accept_clicked.emit)
		self.decline_btn.clicked.connect(self.decline_clicked.emit)
		self.hide()

	@QtCore.Slot(str, str)
	def show_call(self, caller: str, kind: str) -> None:
		self._label.setText(f"Incoming {kind} call from {caller}")
		self.show()

	@QtCore.Slot()
	def clear(self) -> None:
		self._label.setText("")
		self.hide()


class StatusCard(QtWidgets.QFrame):
	"""Connection and call summary: one labelled row per field."""

	# (key, row title, text shown when empty)
	ROWS = (
		("connection", "Connection", "Disconnected"),
		("call", "Call", "idle"),
		("peer", "Peer", "-"),
		("duration", "Duration", "00:00"),
		("error", "Error", ""),
	)

	def __init__(self, parent=None):
		super().__init__(parent)
		self.setFrameShape(QtWidgets.QFrame.Shape.StyledPanel)
		self.setFrameShadow(QtWidgets.QFrame.Shadow.Raised)

		title = QtWidgets.QLabel("Call status")
		bold = title.font()
		bold.setBold(True)
		title.setFont(bold)

		rows = QtWidgets.QFormLayout()
		rows.setContentsMargins(0, 0, 0, 0)
		rows.setHorizontalSpacing(12)
		rows.setVerticalSpacing(4)
		self._fields = {}
		for key, label, empty in self.ROWS:
			field = QtWidgets.QLabel(empty)
			field.setTextInteractionFlags(QtCore.Qt.TextInteractionFlag.TextSelectableByMouse)
			self._fields[key] = field
			rows.addRow(label, field)

		self._fields["error"].setWordWrap(True)
		self._fields["error"].setStyleSheet("color: #c0392b;")

		box = QtWidgets.QVBoxLayout(self)
		box.setContentsMargins(10, 10, 10, 10)
		box.setSpacing(6)
		box.addWidget(title)
		box.addLayout(rows)

	def _show(self, key: str, text: str) -> None:
		empty = next(e for k, _, e in self.ROWS if k == key)
		self._fields[key].setText(text.strip() or empty)

	@QtCore.Slot(str)
	def set_connection_state(self, state: str) -> None:
		self._show("connection", state)

	@QtCore.Slot(str)
	def set_call_state(self, state: str) -> None:
		self._show("call", state)

	@QtCore.Slot(str)
	def set_peer(self, peer: str) -> None:
		self._show("peer", peer)

	@QtCore.Slot(str)
	def set_duration(self, text: str) -> None:
		self._show("duration", text)

	@QtCore.Slot(str)
	def set_error(self, message: str) -> None:
		self._show("error", message)
