from __future__ import annotations

from PySide6 import QtCore, QtWidgets

from .widgets import IncomingCallBanner, LogPanel, StatusCard


class MainWindow(QtWidgets.QMainWindow):
	connect_clicked = QtCore.Signal()
	disconnect_clicked = QtCore.Signal()
	call_clicked = QtCore.Signal(str)  # "voice" | "video"
	accept_clicked = QtCore.Signal()
	decline_clicked = QtCore.Signal()
	end_clicked = QtCore.Signal()
	mute_clicked = QtCore.Signal()
	camera_clicked = QtCore.Signal()

	def __init__(self):
		super().__init__()
		self.setWindowTitle("vc-call")

		central = QtWidgets.QWidget()
		self.setCentralWidget(central)

		self.server_url_edit = QtWidgets.QLineEdit()
		self.server_url_edit.setPlaceholderText("ws://host:8765/ws")

		self.user_id_edit = QtWidgets.QLineEdit()
		self.user_id_edit.setPlaceholderText("Your user id")

		self.name_edit = QtWidgets.QLineEdit()
		self.name_edit.setPlaceholderText("Display name")

		self.peer_id_edit = QtWidgets.QLineEdit()
		self.peer_id_edit.setPlaceholderText("Peer user id")

		self.peer_name_edit = QtWidgets.QLineEdit()
		self.peer_name_edit.setPlaceholderText("Peer name (optional)")

		self.connect_btn = QtWidgets.QPushButton("Connect")
		self.disconnect_btn = QtWidgets.QPushButton("Disconnect")
		self.voice_btn = QtWidgets.QPushButton("Voice call")
		self.video_btn = QtWidgets.QPushButton("Video call")
		self.end_btn = QtWidgets.QPushButton("End")
		self.mute_btn = QtWidgets.QPushButton("Mute")
		self.camera_btn = QtWidgets.QPushButton("Camera off")

		self.incoming_banner = IncomingCallBanner()
		self.log_panel = LogPanel()
		self.status_card = StatusCard()

		form = QtWidgets.QFormLayout()
		form.addRow("Server", self.server_url_edit)
		form.addRow("User id", self.user_id_edit)
		form.addRow("Name", self.name_edit)

		conn_row = QtWidgets.QHBoxLayout()
		conn_row.addWidget(self.connect_btn)
		conn_row.addWidget(self.disconnect_btn)
		conn_row.addStretch(1)

		call_form = QtWidgets.QFormLayout()
		call_form.addRow("Call", self.peer_id_edit)
		call_form.addRow("", self.peer_name_edit)

		call_row = QtWidgets.QHBoxLayout()
		call_row.addWidget(self.voice_btn)
		call_row.addWidget(self.video_btn)
		call_row.addStretch(1)

		in_call_row = QtWidgets.QHBoxLayout()
		in_call_row.addWidget(self.mute_btn)
		in_call_row.addWidget(self.camera_btn)
		in_call_row.addStretch(1)
		in_call_row.addWidget(self.end_btn)

		left = QtWidgets.QVBoxLayout()
		left.addLayout(form)
		left.addLayout(conn_row)
		left.addLayout(call_form)
		left.addLayout(call_row)
		left.addWidget(self.incoming_banner)
		left.addLayout(in_call_row)
		left.addWidget(self.status_card, 0)
		left.addStretch(1)

		right = QtWidgets.QVBoxLayout()
		right.addWidget(QtWidgets.QLabel("Log"))
		right.addWidget(self.log_panel, 1)

		main = QtWidgets.QHBoxLayout(central)
		main.addLayout(left, 1)
		main.addLayout(right, 1)

		self.status = QtWidgets.QStatusBar()
		self.setStatusBar(self.status)
		self.set_status("Idle")

		self.connect_btn.clicked.connect(self.connect_clicked.emit)
		self.disconnect_btn.clicked.connect(self.disconnect_clicked.emit)
		self.voice_btn.clicked.connect(lambda: self.call_clicked.emit("voice"))
		self.video_btn.clicked.connect(lambda: self.call_clicked.emit("video"))
		self.incoming_banner.accept_clicked.connect(self.accept_clicked.emit)
		self.incoming_banner.decline_clicked.connect(self.decline_clicked.emit)
		self.end_btn.clicked.connect(self.end_clicked.emit)
		self.mute_btn.clicked.connect(self.mute_clicked.emit)
		self.camera_btn.clicked.connect(self.camera_clicked.emit)

		self.set_call_controls("idle", video=False)

	def set_status(self, text: str) -> None:
		self.status.showMessage(text)

	@QtCore.Slot(bool, bool)
	def set_flags(self, muted: bool, video_off: bool) -> None:
		self.mute_btn.setText("Unmute" if muted else "Mute")
		self.camera_btn.setText("Camera on" if video_off else "Camera off")

	def set_call_controls(self, state: str, *, video: bool) -> None:
		idle = state in ("idle", "ended")
		self.voice_btn.setEnabled(idle)
		self.video_btn.setEnabled(idle)
		self.end_btn.setEnabled(not idle and state != "incoming-ringing")
		self.mute_btn.setEnabled(state == "active")
		self.camera_btn.setEnabled(state == "active" and video)
		if state != "incoming-ringing":
			self.incoming_banner.clear()
		if state != "active":
			self.set_flags(False, False)
