# Campus Portal - Application Package
"""
Main application package for the Campus Portal.
Contains the attendance core (code issuance, validation, ledger, redemption
and realtime notification) and the campus services built around it.
"""

__version__ = "1.0.0"
__author__ = "Campus Portal Team"
__description__ = "A Flask-based campus portal with QR code attendance, events, complaints and hostels"

# Import core components for easy access
from .modules.database_manager import DatabaseManager
from .modules.auth_manager import AuthManager, Capability, Identity, Role
from .modules.qr_generator import QRGenerator
from .modules.code_validator import CodeValidator
from .modules.attendance_manager import AttendanceManager
from .modules.redemption_workflow import RedemptionState, RedemptionWorkflow
from .modules.notification_system import NotificationSystem
from .modules.event_manager import EventManager
from .modules.complaint_manager import ComplaintManager
from .modules.hostel_manager import HostelManager
from .modules.profile_manager import ProfileManager
from .modules.report_generator import ReportGenerator

__all__ = [
    'DatabaseManager',
    'AuthManager',
    'Capability',
    'Identity',
    'Role',
    'QRGenerator',
    'CodeValidator',
    'AttendanceManager',
    'RedemptionState',
    'RedemptionWorkflow',
    'NotificationSystem',
    'EventManager',
    'ComplaintManager',
    'HostelManager',
    'ProfileManager',
    'ReportGenerator'
]
