"""Tests for the attachment pipeline."""

import asyncio
from io import BytesIO

import httpx
import pytest
from PIL import Image

from chatsync import Chat, ChatOptions, HttpRemoteStore
from chatsync.attachments import (
    THUMBNAIL_MAX_SIZE,
    AttachmentSource,
    attachment_metadata,
    make_thumbnail,
)
from chatsync.errors import (
    FetchFailure,
    ImageProcessingError,
    MalformedInputError,
    NotInitializedError,
    RoomNotFoundError,
)
from chatsync.models import AttachmentToken, Room
from chatsync.testing import TEST_USER_ID


def make_image(width, height, mode="RGB", fmt="PNG"):
    color = (200, 30, 30, 128) if mode == "RGBA" else (200, 30, 30)
    buffer = BytesIO()
    Image.new(mode, (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


def image_size(data):
    with Image.open(BytesIO(data)) as img:
        return img.size, img.format


class FetchRecorder:
    def __init__(self):
        self.progress = []
        self.results = []

    def on_progress(self, fraction):
        self.progress.append(fraction)

    def on_complete(self, result):
        self.results.append(result)


class TestThumbnails:
    def test_scales_longest_side(self):
        size, fmt = image_size(make_thumbnail(make_image(1000, 500)))
        assert size == (THUMBNAIL_MAX_SIZE, 141)
        assert fmt == "JPEG"

    def test_portrait(self):
        size, _ = image_size(make_thumbnail(make_image(300, 600)))
        assert size == (141, THUMBNAIL_MAX_SIZE)

    def test_small_images_are_not_upscaled(self):
        size, fmt = image_size(make_thumbnail(make_image(100, 50)))
        assert size == (100, 50)
        assert fmt == "JPEG"

    def test_transparency_is_flattened(self):
        size, fmt = image_size(make_thumbnail(make_image(400, 400, mode="RGBA")))
        assert size == (THUMBNAIL_MAX_SIZE, THUMBNAIL_MAX_SIZE)
        assert fmt == "JPEG"

    def test_invalid_bytes(self):
        with pytest.raises(ImageProcessingError):
            make_thumbnail(b"definitely not an image")


class TestMetadata:
    def test_file_metadata(self):
        source = AttachmentSource(name="report.pdf", data=b"abc")
        meta = attachment_metadata("u1", "Test User", "file", source, timestamp="2024-01-02T03:04:05.000Z")

        assert meta == {
            "filename": "Test-User_file_2024-01-02T03-04-05.000Z.pdf",
            "userId": "u1",
            "username": "Test User",
            "fileformat": ".pdf",
            "filesize": "3",
            "timestamp": "2024-01-02T03:04:05.000Z",
            "originalName": "report.pdf",
        }

    def test_images_are_jpg(self):
        source = AttachmentSource(name="photo.png", data=b"1234")
        meta = attachment_metadata("u1", "Ann", "thumbnail", source, timestamp="t")
        assert meta["filename"] == "Ann_thumbnail_t.jpg"
        assert meta["fileformat"] == ".jpg"

    def test_file_without_extension(self):
        meta = attachment_metadata("u1", "Ann", "file", AttachmentSource(name="README", data=b""), timestamp="t")
        assert meta["fileformat"] == ".bin"

    def test_source_from_path(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_bytes(b"hello")
        source = AttachmentSource.from_path(path)
        assert source.name == "notes.txt"
        assert source.size == 5
        assert source.extension == "txt"


class TestImageMessages:
    @pytest.mark.asyncio
    async def test_create_image_message(self, chat_with_room, remote_store):
        chat, room = chat_with_room
        data = make_image(1200, 800)

        message = await chat.create_image_message(room, AttachmentSource(name="photo.png", data=data), text="look")

        assert message.thumbnail_image_token is not None
        assert message.large_image_token is not None
        assert message.large_image_token.len == len(data)
        assert message.large_image_token.metadata["filesize"] == str(len(data))
        assert message.thumbnail_image_token.metadata["fileformat"] == ".jpg"

        stored = remote_store.get_document(room.messages_id, message.id)
        assert stored["largeImageToken"]["id"] == message.large_image_token.id
        assert stored["text"] == "look"

        entry = chat.messages_for(room.id)[0]
        assert entry.message.has_attachment
        assert entry.message.large_image_token is not None

    @pytest.mark.asyncio
    async def test_invalid_image_raises(self, chat_with_room, remote_store):
        chat, room = chat_with_room
        with pytest.raises(ImageProcessingError):
            await chat.create_image_message(room, b"garbage")
        assert remote_store.documents(room.messages_id) == []

    @pytest.mark.asyncio
    async def test_missing_room_raises(self, chat):
        with pytest.raises(RoomNotFoundError):
            await chat.create_image_message(Room(id="ghost"), make_image(10, 10))

    @pytest.mark.asyncio
    async def test_without_store_raises(self):
        chat = Chat(ChatOptions(user_id=TEST_USER_ID))
        with pytest.raises(NotInitializedError):
            await chat.create_image_message(Room(id="r"), make_image(10, 10))


class TestFileMessages:
    @pytest.mark.asyncio
    async def test_text_defaults_to_file_name(self, chat_with_room, remote_store):
        chat, room = chat_with_room

        message = await chat.create_file_message(room, AttachmentSource(name="notes.txt", data=b"hello"))

        assert message.text == "notes.txt"
        assert message.file_attachment_token.metadata["fileformat"] == ".txt"
        assert message.file_attachment_token.metadata["username"] == "Test User"
        assert chat.messages_for(room.id)[0].message.file_attachment_token is not None

    @pytest.mark.asyncio
    async def test_empty_file_rejected_before_upload(self, chat_with_room, remote_store):
        chat, room = chat_with_room
        with pytest.raises(MalformedInputError, match="empty"):
            await chat.create_file_message(room, AttachmentSource(name="empty.txt", data=b""))
        assert remote_store.documents(room.messages_id) == []


class TestFetchAttachment:
    @pytest.mark.asyncio
    async def test_fetch_completes_with_data(self, chat_with_room):
        chat, room = chat_with_room
        payload = b"x" * (150 * 1024)
        message = await chat.create_file_message(room, AttachmentSource(name="blob.bin", data=payload))
        recorder = FetchRecorder()

        handle = chat.fetch_attachment(message.file_attachment_token, recorder.on_progress, recorder.on_complete)
        await asyncio.sleep(0)

        assert handle is not None
        assert recorder.progress == sorted(recorder.progress)
        assert recorder.progress[-1] == 1.0
        assert len(recorder.results) == 1
        result = recorder.results[0]
        assert result.success is True
        assert result.data == payload
        assert result.metadata["originalName"] == "blob.bin"

    def test_missing_token(self, chat):
        recorder = FetchRecorder()

        assert chat.fetch_attachment(None, recorder.on_progress, recorder.on_complete) is None

        assert recorder.results[0].success is False
        assert recorder.results[0].error.cause == FetchFailure.MISSING_TOKEN

    @pytest.mark.asyncio
    async def test_deleted(self, chat_with_room, remote_store):
        chat, room = chat_with_room
        message = await chat.create_file_message(room, AttachmentSource(name="a.txt", data=b"a"))
        remote_store.delete_attachment(message.file_attachment_token)
        recorder = FetchRecorder()

        chat.fetch_attachment(message.file_attachment_token, recorder.on_progress, recorder.on_complete)
        await asyncio.sleep(0)

        assert recorder.results[0].error.cause == FetchFailure.DELETED
        assert recorder.progress == []

    def test_not_initialized(self):
        chat = Chat(ChatOptions(user_id=TEST_USER_ID))
        recorder = FetchRecorder()

        chat.fetch_attachment(None, recorder.on_progress, recorder.on_complete)

        assert recorder.results[0].error.cause == FetchFailure.NOT_INITIALIZED

    @pytest.mark.asyncio
    async def test_store_error_is_io_error(self):
        store = HttpRemoteStore("http://store.test", transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        chat = Chat(ChatOptions(url="http://store.test", user_id=TEST_USER_ID), store=store)
        recorder = FetchRecorder()
        chat.fetch_attachment(AttachmentToken(id="t1"), recorder.on_progress, recorder.on_complete)

        assert recorder.results[0].error.cause == FetchFailure.IO_ERROR
        await chat.dispose()
