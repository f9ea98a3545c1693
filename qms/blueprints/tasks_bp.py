"""
Tasks Blueprint — assignable work items.

Routes:
  GET    /tasks                      – visible tasks (?status= matches derived status)
  POST   /tasks                      – create (one task per assignee)
  GET    /tasks/<id>                 – detail
  PUT    /tasks/<id>                 – edit (creator)
  DELETE /tasks/<id>                 – delete (creator)
  POST   /tasks/<id>/assign          – reassign
  POST   /tasks/<id>/start           – assignee starts
  GET    /tasks/<id>/activities      – progress notes
  POST   /tasks/<id>/activities      – add progress note
  POST   /tasks/<id>/complete        – assignee completes
  POST   /tasks/<id>/approve         – reviewer signs off
  POST   /tasks/<id>/reject          – reviewer returns
  POST   /tasks/<id>/cancel          – creator cancels
"""

from flask import Blueprint, jsonify, request

from qms.blueprints import current_user_id, expected_version, json_body, paginate_list
from qms.middleware.permission_required import login_required
from qms.services import task_service
from qms.utils.errors import result_response

tasks_bp = Blueprint("tasks_bp", __name__, url_prefix="/api/v1/tasks")


@tasks_bp.route("", methods=["GET"])
@login_required
def list_tasks():
    tasks = task_service.list_tasks(current_user_id(), status=request.args.get("status"))
    page, total = paginate_list(tasks)
    return jsonify({"items": [t.to_dict() for t in page], "total": total}), 200


@tasks_bp.route("", methods=["POST"])
@login_required
def create_task():
    res = task_service.create_task(current_user_id(), json_body())
    return result_response(res, success_status=201)


@tasks_bp.route("/<int:task_id>", methods=["GET"])
@login_required
def get_task(task_id):
    uid = current_user_id()
    res = task_service.get_task(uid, task_id)
    if not res:
        return result_response(res)
    task = res.value
    return jsonify({
        "success": True,
        "data": task.to_dict(),
        "can": {
            "edit": task_service.can_edit_task(uid, task),
            "approve": task_service.can_approve_task(uid, task),
        },
    }), 200


@tasks_bp.route("/<int:task_id>", methods=["PUT"])
@login_required
def update_task(task_id):
    data = json_body()
    res = task_service.update_task(
        current_user_id(), task_id, data, expected_version=expected_version(data),
    )
    return result_response(res)


@tasks_bp.route("/<int:task_id>", methods=["DELETE"])
@login_required
def delete_task(task_id):
    res = task_service.delete_task(current_user_id(), task_id, expected_version=expected_version())
    return result_response(res)


@tasks_bp.route("/<int:task_id>/assign", methods=["POST"])
@login_required
def assign_task(task_id):
    """Body: { assigned_to_id?, assigned_to_org_unit_id?, version? }"""
    data = json_body()
    res = task_service.assign_task(
        current_user_id(), task_id,
        assignee_id=data.get("assigned_to_id"),
        org_unit_id=data.get("assigned_to_org_unit_id"),
        expected_version=expected_version(data),
    )
    return result_response(res)


@tasks_bp.route("/<int:task_id>/start", methods=["POST"])
@login_required
def start_task(task_id):
    res = task_service.start_task(current_user_id(), task_id, expected_version=expected_version())
    return result_response(res)


@tasks_bp.route("/<int:task_id>/activities", methods=["GET"])
@login_required
def list_activities(task_id):
    return result_response(task_service.get_activities(current_user_id(), task_id))


@tasks_bp.route("/<int:task_id>/activities", methods=["POST"])
@login_required
def add_activity(task_id):
    data = json_body()
    res = task_service.add_task_activity(
        current_user_id(), task_id, data.get("note"), data.get("progress_percent"),
    )
    return result_response(res, success_status=201)


@tasks_bp.route("/<int:task_id>/complete", methods=["POST"])
@login_required
def complete_task(task_id):
    data = json_body()
    res = task_service.complete_task(
        current_user_id(), task_id, notes=data.get("notes"), expected_version=expected_version(data),
    )
    return result_response(res)


@tasks_bp.route("/<int:task_id>/approve", methods=["POST"])
@login_required
def approve_task(task_id):
    data = json_body()
    res = task_service.approve_task_completion(
        current_user_id(), task_id, remarks=data.get("remarks"),
        expected_version=expected_version(data),
    )
    return result_response(res)


@tasks_bp.route("/<int:task_id>/reject", methods=["POST"])
@login_required
def reject_task(task_id):
    data = json_body()
    res = task_service.reject_task_completion(
        current_user_id(), task_id, remarks=data.get("remarks") or "",
        expected_version=expected_version(data),
    )
    return result_response(res)


@tasks_bp.route("/<int:task_id>/cancel", methods=["POST"])
@login_required
def cancel_task(task_id):
    res = task_service.cancel_task(current_user_id(), task_id, expected_version=expected_version())
    return result_response(res)
