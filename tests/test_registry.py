import unittest

from recordshare.constants import MAX_FILE_SIZE
from recordshare.errors import ErrorKind, Forbidden, NotFound, ValidationError

from tests.helpers import ServiceSetUpMixin


class TestRecordRegistry(ServiceSetUpMixin, unittest.TestCase):
    def test_1a_uploadRecord(self):
        record = self.upload(tags=["lab", " blood ", ""])
        self.assertEqual(record.owner_patient_id, "patient-1")
        self.assertEqual(record.file_name, "labs.pdf")
        self.assertEqual(record.tags, {"lab", "blood"})
        self.assertEqual(record.created_at, self.clock.now)
        self.assertFalse(record.degraded)
        self.assertEqual(self.service.registry.get_record(record.record_id), record)

    def test_1b_sameContentTwoRecords(self):
        first = self.upload()
        second = self.upload(file_name="labs-copy.pdf")
        self.assertNotEqual(first.record_id, second.record_id)
        self.assertEqual(first.content_id, second.content_id)
        self.assertEqual(self.blob_store.puts, 1)

    def test_1c_uploadValidation(self):
        cases = [
            (b"", "application/pdf"),
            (b"x" * (MAX_FILE_SIZE + 1), "application/pdf"),
            (b"#!/bin/sh", "application/x-sh"),
        ]
        for data, mime_type in cases:
            result = self.service.upload_record("patient-1", data, mime_type, "f")
            self.assertEqual(result.error, ErrorKind.VALIDATION_ERROR)
            self.assertIsNone(result.data)
        self.assertEqual(self.blob_store.puts, 0)

    def test_1d_uploadRequiresPatient(self):
        for owner in ("", "nobody", "doctor-1"):
            result = self.service.upload_record(owner, b"data", "text/plain", "notes.txt")
            self.assertEqual(result.error, ErrorKind.VALIDATION_ERROR)

    def test_1e_fileNameRequired(self):
        result = self.service.upload_record("patient-1", b"data", "text/plain", "  ")
        self.assertEqual(result.error, ErrorKind.VALIDATION_ERROR)

    def test_2a_listNewestFirst(self):
        oldest = self.upload(data=b"1")
        self.clock.advance(10)
        newest = self.upload(data=b"2")
        self.upload(patient_id="patient-2", data=b"3")

        records = self.service.list_records("patient-1").data
        self.assertEqual([r.record_id for r in records], [newest.record_id, oldest.record_id])

    def test_2b_listTiesOrderedById(self):
        records = [self.upload(data=bytes([i])) for i in range(5)]
        listed = self.service.list_records("patient-1").data
        self.assertEqual([r.record_id for r in listed], sorted(r.record_id for r in records))

    def test_2c_listEmpty(self):
        self.assertEqual(self.service.list_records("patient-2").data, [])

    def test_3a_updateTags(self):
        record = self.upload(tags=["lab"])
        updated = self.service.update_tags(record.record_id, "patient-1", ["imaging", "2024"]).data
        self.assertEqual(updated.tags, {"imaging", "2024"})
        self.assertEqual(self.service.registry.get_record(record.record_id).tags, {"imaging", "2024"})

    def test_3b_updateDescription(self):
        record = self.upload()
        updated = self.service.update_description(record.record_id, "patient-1", "Annual checkup").data
        self.assertEqual(updated.description, "Annual checkup")

    def test_3c_onlyOwnerMayModify(self):
        record = self.upload(tags=["lab"])
        for caller in ("patient-2", "doctor-1"):
            with self.assertRaises(Forbidden):
                self.service.registry.update_tags(record.record_id, caller, ["x"])
            result = self.service.update_description(record.record_id, caller, "x")
            self.assertEqual(result.error, ErrorKind.FORBIDDEN)
        self.assertEqual(self.service.registry.get_record(record.record_id).tags, {"lab"})

    def test_3d_unknownRecord(self):
        with self.assertRaises(NotFound):
            self.service.registry.get_record("missing")
        self.assertEqual(self.service.update_tags("missing", "patient-1", []).error, ErrorKind.NOT_FOUND)

    def test_4_markHealedRejectsDegradedContent(self):
        self.blob_store.available = False
        record = self.upload()
        content = self.service.content_store.get(record.content_id)
        with self.assertRaises(ValidationError):
            self.service.registry.mark_healed(record.record_id, content)
