"""
Section Repository for the model services
Reads sections and enrollments and records each section's model pointer using psycopg2
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

import psycopg2
import psycopg2.extras

logger = logging.getLogger(__name__)


@dataclass
class SectionRecord:
    id: str
    section_code: str
    is_active: bool
    model_storage_path: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'section_code': self.section_code,
            'is_active': self.is_active,
            'model_storage_path': self.model_storage_path,
        }


class SectionRepository:
    def __init__(self, database_url):
        """Initialize database connection"""
        self.database_url = database_url
        self.conn = None
        self._lock = threading.Lock()
        self.connect()

    def connect(self):
        """Establish database connection"""
        try:
            self.conn = psycopg2.connect(self.database_url)
            logger.info("Database connection established")
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            logger.info("Database connection closed")

    def execute_query(self, query, params=None, fetch=True, commit=False):
        """Execute a database query (one statement at a time; workers share the connection)"""
        with self._lock:
            try:
                with self.conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                    cursor.execute(query, params)

                    if commit:
                        self.conn.commit()

                    if fetch:
                        return cursor.fetchall()
                    return None

            except Exception as e:
                self.conn.rollback()
                logger.error(f"Database error: {e}")
                raise

    # ==================== SECTION OPERATIONS ====================

    def find_section(self, section_id) -> Optional[SectionRecord]:
        """Get a section by ID"""
        query = """
            SELECT id::text AS id, section_code, is_active, model_storage_path
            FROM sections
            WHERE id = %s
        """
        results = self.execute_query(query, (section_id,))
        if not results:
            return None
        row = results[0]
        return SectionRecord(
            id=row['id'],
            section_code=row['section_code'],
            is_active=bool(row['is_active']) if row['is_active'] is not None else True,
            model_storage_path=row['model_storage_path'],
        )

    def get_model_storage_path(self, section_id) -> Optional[str]:
        """Current remote model prefix of a section, or None"""
        query = "SELECT model_storage_path FROM sections WHERE id = %s"
        results = self.execute_query(query, (section_id,))
        if not results:
            return None
        return results[0]['model_storage_path'] or None

    def set_model_storage_path(self, section_id, storage_path):
        """Point a section at a new model prefix (None clears it)"""
        query = """
            UPDATE sections
            SET model_storage_path = %s, updated_at = NOW()
            WHERE id = %s
        """
        self.execute_query(query, (storage_path, section_id), fetch=False, commit=True)

    # ==================== ENROLLMENT OPERATIONS ====================

    def find_active_student_ids(self, section_id) -> List[str]:
        """Active enrollments of a section"""
        query = """
            SELECT student_id::text AS student_id
            FROM student_enrollments
            WHERE section_id = %s AND is_active = TRUE
            ORDER BY student_id
        """
        return [row['student_id'] for row in self.execute_query(query, (section_id,))]

    def find_active_section_ids_for_student(self, student_id) -> List[str]:
        """Active sections a student is enrolled in"""
        query = """
            SELECT DISTINCT e.section_id::text AS section_id
            FROM student_enrollments e
            JOIN sections s ON s.id = e.section_id
            WHERE e.student_id = %s
              AND e.is_active = TRUE
              AND COALESCE(s.is_active, TRUE) = TRUE
            ORDER BY section_id
        """
        return [row['section_id'] for row in self.execute_query(query, (student_id,))]

    def find_student_display_names(self, student_ids) -> Dict[str, str]:
        """Map student IDs to "Full Name (number)" labels"""
        if not student_ids:
            return {}
        query = """
            SELECT id::text AS id, full_name, student_id AS student_number
            FROM profiles
            WHERE id::text = ANY(%s)
        """
        names = {}
        for row in self.execute_query(query, (list(student_ids),)):
            name = row['full_name'] or row['id']
            if row['student_number']:
                name = f"{name} ({row['student_number']})"
            names[row['id']] = name
        return names
