#!/usr/bin/env python3
"""
Retrain face recognition models from the command line

Usage:
    python scripts/retrain_section.py --section <section-id>
    python scripts/retrain_section.py --student <student-id>
    python scripts/retrain_section.py --global
    python scripts/retrain_section.py --stats
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import argparse
import json
import logging

from app import model_manager, section_models
from services.section_model_service import SectionModelError, SectionModelTrainingError
from services.storage_service import StorageError

logger = logging.getLogger(__name__)


def retrain_section(section_id):
    """Retrain one section and print the result"""
    try:
        result = section_models.retrain_section_sync(section_id)
    except SectionModelTrainingError as e:
        logger.error(f"Training rejected: {e}")
        if e.missing_student_ids:
            logger.error(f"Students without usable photos: {', '.join(e.missing_student_ids)}")
        return 2
    except (SectionModelError, StorageError) as e:
        logger.error(f"Retrain failed: {e}")
        return 1
    print(json.dumps(result.to_dict(), indent=2))
    return 0


def retrain_student_sections(student_id):
    """Retrain every active section of a student"""
    futures = section_models.retrain_sections_for_student(student_id)
    if not futures:
        logger.info(f"Student {student_id} has no active sections")
        return 0

    failed = 0
    for section_id, future in futures.items():
        try:
            result = future.result()
            logger.info(f"Section {section_id}: {result.image_count} images")
        except (SectionModelError, StorageError) as e:
            logger.error(f"Section {section_id}: {e}")
            failed += 1
    return 1 if failed else 0


def retrain_global():
    if model_manager.retrain_all_quietly():
        logger.info(f"Global model ready: {model_manager.is_ready()}")
        return 0
    return 1


def main():
    parser = argparse.ArgumentParser(description='Retrain face recognition models')
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument('--section', help='Section ID to retrain')
    group.add_argument('--student', help='Retrain every active section of this student')
    group.add_argument('--global', dest='global_model', action='store_true',
                       help='Retrain the global model from the local faces directory')
    group.add_argument('--stats', action='store_true', help='Print local dataset statistics')
    args = parser.parse_args()

    try:
        if args.section:
            return retrain_section(args.section)
        if args.student:
            return retrain_student_sections(args.student)
        if args.global_model:
            return retrain_global()
        print(json.dumps(model_manager.collect_dataset_stats().to_dict(), indent=2))
        return 0
    finally:
        section_models.shutdown()
        model_manager.shutdown()


if __name__ == '__main__':
    sys.exit(main())
