IMAGES = "board-images"
THUMBNAILS = "board-thumbnails"
MAX_FILE_SIZE = 5 * 1024 * 1024


def post_thread(client, data=None, file=None):
    files = {"file": file} if file else None
    return client.post("/api/thread", data=data or {}, files=files)


def delete(client, url, password):
    return client.request("DELETE", url, json={"password": password})


def test_status(client):
    response = client.get("/status")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "OK"
    assert body["boardName"] == "/b/"
    assert "time" in body


def test_root_redirects_to_status(client):
    response = client.get("/", follow_redirects=False)

    assert response.status_code in (302, 307)
    assert response.headers["location"] == "/status"


def test_create_thread_with_image(client, storage, jpeg_bytes):
    response = post_thread(
        client,
        {"subject": "Cats", "comment": "look", "password": "pw", "is_nsfw": "true"},
        ("cat.jpg", jpeg_bytes, "image/jpeg"),
    )

    assert response.status_code == 201
    body = response.json()
    assert body["message"] == "Thread created successfully"
    thread = body["thread"]
    assert thread["subject"] == "Cats"
    assert thread["name"] == "Anonymous"
    assert thread["is_nsfw"] is True
    assert thread["images_count"] == 1
    assert thread["storage_path"].startswith("nsfw/")
    assert thread["thumbnail_path"].startswith(f"http://storage.test/{THUMBNAILS}/")
    assert "ip_address" not in thread
    assert thread["storage_path"] in storage.objects(IMAGES)


def test_empty_thread_is_rejected(client, storage):
    response = post_thread(client, {"subject": "nothing here"})

    assert response.status_code == 400
    assert response.json() == {"error": "Either an image or comment is required"}
    assert storage.calls == []


def test_overlong_fields_are_rejected(client):
    response = post_thread(client, {"comment": "x", "subject": "s" * 101})

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Validation error"
    assert body["details"]


def test_file_at_size_limit_is_accepted(client, jpeg_bytes):
    padded = jpeg_bytes + b"\0" * (MAX_FILE_SIZE - len(jpeg_bytes))

    response = post_thread(client, file=("big.jpg", padded, "image/jpeg"))

    assert response.status_code == 201
    assert response.json()["thread"]["file_size"] == MAX_FILE_SIZE


def test_file_over_size_limit_is_rejected(client, storage, jpeg_bytes):
    padded = jpeg_bytes + b"\0" * (MAX_FILE_SIZE + 1 - len(jpeg_bytes))

    response = post_thread(client, {"comment": "big"}, ("big.jpg", padded, "image/jpeg"))

    assert response.status_code == 400
    assert "maximum size" in response.json()["error"]
    assert storage.calls == []


def test_only_one_file_per_request(client, storage, jpeg_bytes):
    response = client.post(
        "/api/thread",
        data={"comment": "two files"},
        files=[
            ("file", ("a.jpg", jpeg_bytes, "image/jpeg")),
            ("file", ("b.jpg", jpeg_bytes, "image/jpeg")),
        ],
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Only one file may be uploaded"}
    assert storage.calls == []
    assert client.get("/api/threads").json()["pagination"]["total"] == 0


def test_reply_with_two_files_is_rejected(client, storage, jpeg_bytes):
    thread_id = post_thread(client, {"comment": "op"}).json()["thread"]["id"]

    response = client.post(
        f"/api/thread/{thread_id}/reply",
        files=[
            ("file", ("a.jpg", jpeg_bytes, "image/jpeg")),
            ("file", ("b.png", jpeg_bytes, "image/png")),
        ],
    )

    assert response.status_code == 400
    assert storage.calls == []


def test_disallowed_file_type_is_rejected(client, storage):
    response = post_thread(client, {"comment": "doc"}, ("notes.txt", b"hello", "text/plain"))

    assert response.status_code == 400
    assert response.json()["error"].startswith("File type not allowed")
    assert storage.calls == []


def test_storage_failure_returns_bad_gateway(client, storage, jpeg_bytes):
    storage.fail_uploads.add(IMAGES)

    response = post_thread(client, {"comment": "hi"}, ("cat.jpg", jpeg_bytes, "image/jpeg"))

    assert response.status_code == 502
    assert response.json() == {"error": "Upload failed"}
    assert client.get("/api/threads").json()["pagination"]["total"] == 0


def test_thread_detail_and_replies(client, jpeg_bytes):
    thread_id = post_thread(client, {"comment": "op"}).json()["thread"]["id"]

    first = client.post(f"/api/thread/{thread_id}/reply", data={"comment": "first", "name": "Bob"})
    assert first.status_code == 201
    assert first.json()["message"] == "Reply posted successfully"
    first_id = first.json()["post"]["id"]

    second = client.post(
        f"/api/thread/{thread_id}/reply",
        data={"reply_to": first_id},
        files={"file": ("cat.jpg", jpeg_bytes, "image/jpeg")},
    )
    assert second.status_code == 201
    assert second.json()["post"]["reply_to"] == first_id

    response = client.get(f"/api/thread/{thread_id}")
    assert response.status_code == 200
    body = response.json()
    assert body["thread"]["reply_count"] == 2
    assert body["thread"]["images_count"] == 1
    assert [post["comment"] for post in body["posts"]] == ["first", None]
    assert body["posts"][0]["name"] == "Bob"


def test_reply_to_invalid_post_id(client):
    thread_id = post_thread(client, {"comment": "op"}).json()["thread"]["id"]

    response = client.post(f"/api/thread/{thread_id}/reply", data={"comment": "x", "reply_to": "not-a-uuid"})

    assert response.status_code == 400


def test_missing_thread(client):
    assert client.get("/api/thread/missing").status_code == 404
    response = client.post("/api/thread/missing/reply", data={"comment": "hello"})
    assert response.status_code == 404
    assert response.json() == {"error": "Thread not found"}


def test_delete_thread(client, storage, jpeg_bytes):
    created = post_thread(client, {"comment": "op", "password": "secret"}, ("cat.jpg", jpeg_bytes, "image/jpeg"))
    thread_id = created.json()["thread"]["id"]

    forbidden = delete(client, f"/api/thread/{thread_id}", "wrong")
    assert forbidden.status_code == 403
    assert forbidden.json() == {"error": "Invalid password"}

    response = delete(client, f"/api/thread/{thread_id}", "secret")
    assert response.status_code == 200
    assert response.json() == {"message": "Thread deleted successfully"}
    assert storage.objects(IMAGES) == {}
    assert client.get(f"/api/thread/{thread_id}").status_code == 404


def test_delete_requires_password(client):
    thread_id = post_thread(client, {"comment": "op", "password": "secret"}).json()["thread"]["id"]

    response = client.request("DELETE", f"/api/thread/{thread_id}", json={})

    assert response.status_code == 400
    assert response.json()["error"] == "Validation error"


def test_delete_post(client):
    thread_id = post_thread(client, {"comment": "op"}).json()["thread"]["id"]
    reply = client.post(f"/api/thread/{thread_id}/reply", data={"comment": "oops", "password": "pw"})
    post_id = reply.json()["post"]["id"]

    assert delete(client, f"/api/post/{post_id}", "nope").status_code == 403
    response = delete(client, f"/api/post/{post_id}", "pw")

    assert response.status_code == 200
    assert response.json() == {"message": "Post deleted successfully"}
    assert client.get(f"/api/thread/{thread_id}").json()["posts"] == []
    assert delete(client, f"/api/post/{post_id}", "pw").status_code == 404


def test_thread_listing(client):
    ids = [post_thread(client, {"comment": f"thread {i}"}).json()["thread"]["id"] for i in range(3)]
    client.post(f"/api/thread/{ids[0]}/reply", data={"comment": "bump"})

    response = client.get("/api/threads", params={"page": 1, "pageSize": 2})

    assert response.status_code == 200
    body = response.json()
    assert [thread["id"] for thread in body["threads"]] == [ids[0], ids[2]]
    assert [post["comment"] for post in body["threads"][0]["preview_posts"]] == ["bump"]
    assert body["pagination"] == {"total": 3, "page": 1, "pageSize": 2, "totalPages": 2}


def test_thread_listing_rejects_bad_paging(client):
    assert client.get("/api/threads", params={"page": 0}).status_code == 400
    assert client.get("/api/threads", params={"pageSize": 101}).status_code == 400


def test_stats_are_invalidated_by_writes(client, fake_redis, jpeg_bytes):
    assert client.get("/api/stats").json() == {"thread_count": 0, "post_count": 0, "image_count": 0}
    assert "cache:stats" in fake_redis.store

    thread_id = post_thread(client, {"comment": "op"}, ("cat.jpg", jpeg_bytes, "image/jpeg")).json()["thread"]["id"]
    client.post(f"/api/thread/{thread_id}/reply", data={"comment": "reply"})

    assert client.get("/api/stats").json() == {"thread_count": 1, "post_count": 1, "image_count": 1}


def test_rate_limit(make_client):
    client = make_client(rate_limit_max_requests=2)

    first = client.get("/api/threads")
    assert first.headers["RateLimit-Limit"] == "2"
    assert first.headers["RateLimit-Remaining"] == "1"
    assert client.get("/api/threads").status_code == 200

    limited = client.get("/api/threads")
    assert limited.status_code == 429
    assert limited.json() == {"error": "Too many requests, please try again later.", "retryAfter": 60}
    assert limited.headers["RateLimit-Remaining"] == "0"
    assert "Retry-After" in limited.headers

    # Outside the API prefix nothing is counted
    assert client.get("/status").status_code == 200
