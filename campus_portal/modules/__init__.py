# Campus Portal - Modules Package
"""
Core business logic modules for the Campus Portal.
"""

# Module descriptions
MODULES = {
    'database_manager': 'Database operations, schema management and change feed',
    'auth_manager': 'Roles, capabilities and identity resolution',
    'qr_generator': 'Attendance code issuance and QR rendering',
    'code_validator': 'Validation of submitted attendance codes',
    'attendance_manager': 'Attendance ledger and statistics',
    'redemption_workflow': 'Self-service attendance redemption',
    'notification_system': 'Realtime change subscriptions and toasts',
    'event_manager': 'Campus events and registrations',
    'complaint_manager': 'Complaint filing and resolution',
    'hostel_manager': 'Hostels, rooms, occupancy and allocation',
    'profile_manager': 'User profiles and student directory',
    'report_generator': 'Attendance export to CSV and Excel'
}


def get_module_info():
    """Get information about available modules"""
    return MODULES
