"""
Report Generator Module - Campus Portal

This module exports attendance records for staff. Records are loaded from
the attendance ledger, joined with the student profile and written as CSV
or as an Excel workbook with a per-subject summary sheet.

Features:
- CSV and Excel export via pandas
- Date range, subject, status and student filters
- Per-subject summary sheet for Excel exports
- Retention-based cleanup of old export files
"""

import pandas as pd
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import logging
import os

from campus_portal.exceptions import InvalidInputError
from campus_portal.modules.auth_manager import Capability, Identity

EXPORT_COLUMNS = [
    'date', 'time_slot', 'class_subject', 'class_type', 'student_name',
    'student_number', 'status', 'location', 'marked_at', 'marked_by',
]


class ReportGenerator:
    """
    Attendance export to CSV and Excel.
    """

    SUPPORTED_FORMATS = ('csv', 'excel')

    FILTER_FIELDS = ('date_from', 'date_to', 'class_subject', 'status', 'user_id')

    def __init__(self, database_manager, auth_manager, output_dir: str = 'exports',
                 max_records: int = 10000, retention_days: Optional[int] = 30):
        """
        Initialize the report generator with database connection.

        Args:
            database_manager: Database manager instance
            auth_manager: Auth manager used for capability checks
            output_dir (str): Directory export files are written to
            max_records (int): Maximum rows per export
            retention_days (int): Export files older than this are removed
                before a new export is written; None keeps everything
        """
        self.db = database_manager
        self.auth = auth_manager
        self.logger = logging.getLogger(__name__)

        self.output_dir = str(output_dir)
        self.max_records = max_records
        self.retention_days = retention_days

        os.makedirs(self.output_dir, exist_ok=True)

    def export_attendance(self, identity: Identity, filters: Optional[Dict[str, Any]] = None,
                          output_format: str = 'csv') -> Dict[str, Any]:
        """
        Export attendance records matching the filters.

        Args:
            identity (Identity): Staff member requesting the export
            filters (dict): date_from, date_to (YYYY-MM-DD), class_subject,
                status, user_id
            output_format (str): csv or excel

        Returns:
            Dict[str, Any]: success, filename, path, format, record_count and size;
            success is False with an error message when nothing matches
        """
        self.auth.require(identity, Capability.EXPORT_ATTENDANCE)

        if output_format not in self.SUPPORTED_FORMATS:
            raise InvalidInputError(f"Unsupported output format: {output_format}",
                                    field='format')

        filters = {key: value for key, value in (filters or {}).items() if value}
        unknown = sorted(set(filters) - set(self.FILTER_FIELDS))
        if unknown:
            raise InvalidInputError(f"Unknown filters: {', '.join(unknown)}", field=unknown[0])

        records = self._get_attendance_records(filters)
        if not records:
            return {
                'success': False,
                'error': 'No data found for the specified criteria'
            }

        if self.retention_days:
            self.delete_old_reports(self.retention_days)

        df = pd.DataFrame(records, columns=EXPORT_COLUMNS)

        if output_format == 'excel':
            result = self._write_excel(df, filters)
        else:
            result = self._write_csv(df)

        result['record_count'] = len(df)
        self.logger.info(
            f"Attendance export generated by {identity.user_id}: "
            f"{result['filename']} ({result['record_count']} records)"
        )
        return result

    def _get_attendance_records(self, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        conditions = {}
        # Only one condition per column reaches the store; the upper bound of a
        # full range is applied to the result.
        if filters.get('date_from'):
            conditions['date'] = ('gte', filters['date_from'])
        elif filters.get('date_to'):
            conditions['date'] = ('lte', filters['date_to'])
        for field in ('class_subject', 'status', 'user_id'):
            if filters.get(field):
                conditions[field] = filters[field]

        rows, error = self.db.select(
            'attendance', conditions, order_by='marked_at', limit=self.max_records,
            embed={'student': ('profiles', 'user_id'), 'marker': ('profiles', 'marked_by')}
        )
        if error:
            self.logger.error(f"Failed to load attendance for export: {error.message}")
            raise error

        if filters.get('date_from') and filters.get('date_to'):
            rows = [row for row in rows if row['date'] <= filters['date_to']]

        records = []
        for row in rows:
            student = row['student'] or {}
            marker = row['marker'] or {}
            records.append({
                'date': row['date'],
                'time_slot': row['time_slot'],
                'class_subject': row['class_subject'],
                'class_type': row['class_type'],
                'student_name': student.get('full_name'),
                'student_number': student.get('student_id'),
                'status': row['status'],
                'location': row['location'],
                'marked_at': row['marked_at'],
                'marked_by': marker.get('full_name'),
            })
        return records

    def _export_path(self, extension: str):
        filename = f"attendance_{datetime.now().strftime('%Y%m%d_%H%M%S_%f')}.{extension}"
        return filename, os.path.join(self.output_dir, filename)

    def _write_csv(self, df: pd.DataFrame) -> Dict[str, Any]:
        filename, filepath = self._export_path('csv')
        df.to_csv(filepath, index=False, encoding='utf-8')
        return {
            'success': True,
            'filename': filename,
            'path': filepath,
            'format': 'csv',
            'size': os.path.getsize(filepath)
        }

    def _write_excel(self, df: pd.DataFrame, filters: Dict[str, Any]) -> Dict[str, Any]:
        filename, filepath = self._export_path('xlsx')

        summary = (
            df.assign(attended=df['status'].isin(['present', 'late']))
              .groupby('class_subject')
              .agg(total=('status', 'size'), attended=('attended', 'sum'))
              .reset_index()
        )
        summary['percentage'] = (summary['attended'] * 100.0 / summary['total']).round(1)

        with pd.ExcelWriter(filepath, engine='openpyxl') as writer:
            df.to_excel(writer, sheet_name='Attendance', index=False)
            summary.to_excel(writer, sheet_name='Subject Summary', index=False)

            filters_data = [{'Filter': k, 'Value': v} for k, v in filters.items()]
            if filters_data:
                pd.DataFrame(filters_data).to_excel(writer, sheet_name='Applied Filters', index=False)

        return {
            'success': True,
            'filename': filename,
            'path': filepath,
            'format': 'excel',
            'size': os.path.getsize(filepath)
        }

    def delete_old_reports(self, days_old: int = 30) -> Dict[str, Any]:
        """
        Delete export files older than ``days_old`` days.

        Returns:
            Dict[str, Any]: Number of files deleted
        """
        cutoff = datetime.now() - timedelta(days=days_old)
        deleted = 0
        for filename in os.listdir(self.output_dir):
            filepath = os.path.join(self.output_dir, filename)
            if os.path.isfile(filepath) and datetime.fromtimestamp(os.path.getmtime(filepath)) < cutoff:
                os.remove(filepath)
                deleted += 1

        self.logger.info(f"Deleted {deleted} old export files")
        return {'success': True, 'deleted_count': deleted}
