from flask import (
    Blueprint,
    render_template,
    session,
    redirect,
    url_for,
    request,
    jsonify,
    current_app,
    send_file,
)
from dataclasses import replace
from datetime import datetime, date, timezone
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import io
import json

from inspection_dashboard.auth.routes import admin_required, login_required
from inspection_dashboard.calculator import (
    DEFAULT_STAGES,
    add_stage_to_all_months,
    ensure_stages,
    generate_year_data,
    get_all_stage_names,
    recalculate_month,
    remove_stage_from_all_months,
    stage_id_from_name,
    stage_performance_summary,
    update_month_stage,
    validate_stage_name,
)
from inspection_dashboard.export import (
    export_backup_csv,
    export_json_backup,
    export_wide_csv,
)
from inspection_dashboard.glide_path import calculate_glide_path
from inspection_dashboard.interventions import (
    calculate_projections,
    current_state_for_stage,
)
from inspection_dashboard.main.pdf_utils import PdfGenerationError, render_html_to_pdf
from inspection_dashboard.models import InterventionPlan, YearTarget, plan_stage_id
from inspection_dashboard.reconcile import (
    build_upload_summary,
    decode_json_backup,
    decode_sectioned_csv,
    decode_wide_csv,
    decode_wide_workbook,
)
from inspection_dashboard.report import build_report_payload, generate_report_charts
from inspection_dashboard.targets import build_year_target, validate_targets

main_bp = Blueprint('main', __name__)

WORKBOOK_EXTENSIONS = ('.xlsx', '.xls')


def _store():
    return current_app.config['INSPECTION_STORE']


def _error(message, status):
    return jsonify({'success': False, 'error': message}), status


def _storage_error(error):
    current_app.logger.error("Storage request failed: %s", error)
    return _error(error, 500)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_year(value):
    """Return ``value`` as a year, ``None`` when blank; raises ``ValueError``."""

    if value in (None, ''):
        return None
    try:
        year = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid year: {value}") from None
    if year < 1900 or year > 9999:
        raise ValueError(f"Invalid year: {value}")
    return year


def _load_report_css() -> str:
    """Load the shared report stylesheet so it can be inlined."""

    static_folder = current_app.static_folder or ''
    css_path = Path(static_folder) / 'css' / 'report.css'
    try:
        return css_path.read_text(encoding='utf-8')
    except OSError as exc:  # pragma: no cover - log & fall back to default styling
        current_app.logger.warning("Unable to load report CSS: %s", exc)
    return ""


def _report_timezone():
    """Return the timezone used for report timestamps.

    Prefers the configured ``LOCAL_TIMEZONE`` (defaulting to Europe/London)
    and falls back to UTC if the zone cannot be loaded.
    """

    tz_name = current_app.config.get("LOCAL_TIMEZONE") or "Europe/London"
    try:
        return ZoneInfo(tz_name)
    except ZoneInfoNotFoundError:
        current_app.logger.warning(
            "Timezone %s unavailable; falling back to UTC", tz_name
        )
    except Exception as exc:  # pragma: no cover - unexpected zoneinfo failures
        current_app.logger.warning(
            "Error loading timezone %s: %s; falling back to UTC", tz_name, exc
        )
    return timezone.utc


def _replace_months(result, existing):
    """Persist a decoded import as a full replacement and build the response."""

    summary = build_upload_summary(result, existing)
    if not result.success:
        current_app.logger.warning(
            "Rejected %s import: %s", result.source_format, '; '.join(result.errors)
        )
        return jsonify(summary), 400

    inserted, error = _store().replace_inspections(result.months)
    if error:
        current_app.logger.error("Import replace failed: %s", error)
        summary['success'] = False
        summary['errors'].append(error)
        return jsonify(summary), 500

    for warning in result.warnings:
        current_app.logger.warning("%s import: %s", result.source_format, warning)
    current_app.logger.info(
        "Replaced inspection data with %d months from %s", inserted, result.source_format
    )
    return jsonify(summary)


def _existing_months():
    months, error = _store().fetch_inspections()
    if error:
        current_app.logger.warning("Unable to load current months for summary: %s", error)
        return []
    return months


# Inspection months


@main_bp.route('/api/inspections', methods=['GET'])
@login_required
def api_inspections():
    try:
        year = _parse_year(request.args.get('year'))
    except ValueError as exc:
        return _error(str(exc), 400)
    months, error = _store().fetch_inspections(year)
    if error:
        return _storage_error(error)
    return jsonify({'success': True, 'data': [month.to_document() for month in months]})


@main_bp.route('/api/inspections/<month_id>', methods=['GET'])
@login_required
def api_inspection(month_id):
    month, error = _store().fetch_inspection(month_id)
    if error:
        return _storage_error(error)
    if month is None:
        return _error(f"Month {month_id} not found", 404)
    return jsonify({'success': True, 'data': month.to_document()})


@main_bp.route('/api/inspections/<month_id>/stages/<stage_id>', methods=['PUT'])
@login_required
def api_update_stage(month_id, stage_id):
    """Edit the inspected and fault counts of one stage in one month."""

    body = request.get_json(silent=True) or {}
    if 'inspected' not in body and 'faults' not in body:
        return _error('Provide inspected and/or faults', 400)

    month, error = _store().fetch_inspection(month_id)
    if error:
        return _storage_error(error)
    if month is None:
        return _error(f"Month {month_id} not found", 404)

    try:
        updated = update_month_stage(
            month,
            stage_id,
            inspected=body.get('inspected'),
            faults=body.get('faults'),
        )
    except KeyError:
        return _error(f"Stage {stage_id} not found in {month.date}", 404)
    except (TypeError, ValueError) as exc:
        return _error(str(exc), 400)

    _, error = _store().save_inspection(updated)
    if error:
        return _storage_error(error)
    return jsonify({'success': True, 'data': updated.to_document()})


@main_bp.route('/api/inspections/recalculate-totals', methods=['POST'])
@admin_required
def api_recalculate_totals():
    months, error = _store().fetch_inspections()
    if error:
        return _storage_error(error)
    recalculated = [recalculate_month(month) for month in months]
    _, error = _store().save_inspections(recalculated)
    if error:
        return _storage_error(error)
    current_app.logger.info("Recalculated totals for %d months", len(recalculated))
    return jsonify({'success': True, 'monthsUpdated': len(recalculated)})


@main_bp.route('/api/inspections/stages', methods=['POST'])
@admin_required
def api_add_stages():
    """Add one or more zeroed stages to every stored month."""

    body = request.get_json(silent=True) or {}
    names = body.get('stageNames')
    if names is None:
        names = [body.get('stageName')]
    if not isinstance(names, list):
        return _error('stageNames must be a list', 400)
    names = [str(name or '').strip().upper() for name in names]
    invalid = [name for name in names if not validate_stage_name(name)]
    if invalid or not names:
        return _error(
            'Stage names may only contain letters, numbers and spaces', 400
        )

    months, error = _store().fetch_inspections()
    if error:
        return _storage_error(error)
    if not months:
        return _error('No months stored; seed a year first', 404)

    existing = {stage_id_from_name(name) for name in get_all_stage_names(months)}
    new_names = [name for name in names if stage_id_from_name(name) not in existing]
    if not new_names:
        return _error('Stage already exists', 409)

    if len(new_names) == 1:
        updated = add_stage_to_all_months(months, new_names[0])
    else:
        updated = ensure_stages(months, new_names)
    _, error = _store().save_inspections(updated)
    if error:
        return _storage_error(error)
    current_app.logger.info("Added stages %s to %d months", new_names, len(updated))
    return jsonify({'success': True, 'stagesAdded': new_names, 'monthsUpdated': len(updated)}), 201


@main_bp.route('/api/inspections/stages/<stage_id>', methods=['DELETE'])
@admin_required
def api_remove_stage(stage_id):
    months, error = _store().fetch_inspections()
    if error:
        return _storage_error(error)
    if not any(month.stage(stage_id) for month in months):
        return _error(f"Stage {stage_id} not found", 404)

    updated = remove_stage_from_all_months(months, stage_id)
    _, error = _store().save_inspections(updated)
    if error:
        return _storage_error(error)
    current_app.logger.info("Removed stage %s from %d months", stage_id, len(updated))
    return jsonify({'success': True, 'stageId': stage_id, 'monthsUpdated': len(updated)})


@main_bp.route('/api/seed', methods=['POST'])
@admin_required
def api_seed_year():
    """Open a new year with twelve zeroed months.

    The stage list follows the stored data so that added stages carry over;
    an empty store starts from the default stages.
    """

    body = request.get_json(silent=True) or {}
    try:
        year = _parse_year(body.get('year')) or date.today().year
    except ValueError as exc:
        return _error(str(exc), 400)

    months, error = _store().fetch_inspections()
    if error:
        return _storage_error(error)
    if any(month.year == year for month in months):
        return _error(f"Data for {year} already exists", 409)

    stage_names = get_all_stage_names(months) or list(DEFAULT_STAGES)
    seeded = generate_year_data(year, stage_names)
    _, error = _store().save_inspections(seeded)
    if error:
        return _storage_error(error)
    current_app.logger.info("Seeded %d months for %s", len(seeded), year)
    return jsonify({'success': True, 'year': year, 'monthsCreated': len(seeded)}), 201


# Imports


@main_bp.route('/api/upload-csv', methods=['POST'])
@admin_required
def api_upload_csv():
    """Replace all months with a wide CSV or Excel workbook upload."""

    uploaded = request.files.get('file')
    if not uploaded or uploaded.filename == '':
        return _error('No file provided', 400)

    filename = uploaded.filename.lower()
    if filename.endswith(WORKBOOK_EXTENSIONS):
        result = decode_wide_workbook(uploaded.stream, filename)
    elif filename.endswith('.csv'):
        try:
            text = uploaded.stream.read().decode('utf-8-sig')
        except UnicodeDecodeError:
            return _error('CSV file must be UTF-8 encoded', 400)
        result = decode_wide_csv(text)
    else:
        return _error('Unsupported file type. Upload a .csv, .xlsx or .xls file.', 400)

    return _replace_months(result, _existing_months())


@main_bp.route('/api/restore-csv', methods=['POST'])
@admin_required
def api_restore_csv():
    """Restore from the sectioned backup CSV produced by ``/api/export``."""

    uploaded = request.files.get('file')
    try:
        if uploaded and uploaded.filename:
            text = uploaded.stream.read().decode('utf-8-sig')
        else:
            text = request.get_data().decode('utf-8-sig')
    except UnicodeDecodeError:
        return _error('Backup file must be UTF-8 encoded', 400)
    if not text.strip():
        return _error('No backup data provided', 400)

    return _replace_months(decode_sectioned_csv(text), _existing_months())


@main_bp.route('/api/restore-data', methods=['POST'])
@admin_required
def api_restore_data():
    """Restore from a JSON backup (envelope, export document or bare list)."""

    uploaded = request.files.get('file')
    if uploaded and uploaded.filename:
        try:
            payload = json.loads(uploaded.stream.read().decode('utf-8-sig'))
        except (UnicodeDecodeError, ValueError) as exc:
            return _error(f"Invalid JSON backup: {exc}", 400)
    else:
        payload = request.get_json(silent=True)
    if payload is None:
        return _error('No backup data provided', 400)

    return _replace_months(decode_json_backup(payload), _existing_months())


@main_bp.route('/api/export', methods=['GET'])
@login_required
def api_export():
    fmt = request.args.get('format') or 'csv'
    months, error = _store().fetch_inspections()
    if error:
        return _storage_error(error)

    stamp = datetime.now(_report_timezone())
    filename_stem = f"dpu_data_{stamp.strftime('%Y%m%d')}"
    if fmt == 'csv':
        body = export_wide_csv(months)
        return send_file(
            io.BytesIO(body.encode('utf-8')),
            mimetype='text/csv',
            download_name=f"{filename_stem}.csv",
            as_attachment=True,
        )
    if fmt == 'backup-csv':
        body = export_backup_csv(months, now=stamp)
        return send_file(
            io.BytesIO(body.encode('utf-8')),
            mimetype='text/csv',
            download_name=f"{filename_stem}_backup.csv",
            as_attachment=True,
        )
    if fmt == 'json':
        body = json.dumps(export_json_backup(months, now=stamp), indent=2)
        return send_file(
            io.BytesIO(body.encode('utf-8')),
            mimetype='application/json',
            download_name=f"{filename_stem}.json",
            as_attachment=True,
        )
    return _error('Unsupported format. Choose csv, backup-csv or json.', 400)


@main_bp.route('/api/stages/summary', methods=['GET'])
@login_required
def api_stage_summary():
    try:
        year = _parse_year(request.args.get('year'))
    except ValueError as exc:
        return _error(str(exc), 400)
    months, error = _store().fetch_inspections(year)
    if error:
        return _storage_error(error)
    return jsonify({'success': True, 'data': stage_performance_summary(months)})


# Year targets


@main_bp.route('/api/targets', methods=['GET'])
@login_required
def api_targets():
    try:
        year = _parse_year(request.args.get('year'))
    except ValueError as exc:
        return _error(str(exc), 400)

    if year is None:
        targets, error = _store().fetch_year_targets()
        if error:
            return _storage_error(error)
        return jsonify({'success': True, 'data': [target.to_document() for target in targets]})

    target, error = _store().fetch_year_target(year)
    if error:
        return _storage_error(error)
    if target is None:
        return _error(f"No targets set for {year}", 404)
    return jsonify({'success': True, 'data': target.to_document()})


@main_bp.route('/api/targets', methods=['POST'])
@admin_required
def api_save_targets():
    """Create or replace the targets of one year."""

    body = request.get_json(silent=True) or {}
    try:
        target = YearTarget.from_document(body)
    except (KeyError, TypeError, ValueError) as exc:
        return _error(str(exc), 400)

    existing, error = _store().fetch_year_target(target.year)
    if error:
        return _storage_error(error)
    stamp = _now()
    target = replace(
        target,
        created_at=existing.created_at if existing and existing.created_at else stamp,
        updated_at=stamp,
    )
    _, error = _store().upsert_year_target(target)
    if error:
        return _storage_error(error)
    current_app.logger.info("Saved %s targets for %s", target.allocation_strategy, target.year)
    return jsonify({'success': True, 'data': target.to_document()}), 200 if existing else 201


@main_bp.route('/api/targets', methods=['DELETE'])
@admin_required
def api_delete_targets():
    try:
        year = _parse_year(request.args.get('year'))
    except ValueError as exc:
        return _error(str(exc), 400)
    if year is None:
        return _error('Year is required', 400)

    deleted, error = _store().delete_year_target(year)
    if error:
        return _storage_error(error)
    if not deleted:
        return _error(f"No targets set for {year}", 404)
    return jsonify({'success': True, 'year': year})


@main_bp.route('/api/targets/allocate', methods=['POST'])
@admin_required
def api_allocate_targets():
    """Allocate stage targets from a stored baseline month.

    With ``"save": true`` the result is stored as the year's targets.
    """

    body = request.get_json(silent=True) or {}
    month_id = body.get('baselineMonthId')
    if not month_id:
        return _error('Missing required fields: baselineMonthId', 400)
    try:
        year = _parse_year(body.get('year'))
        combined = float(body.get('combinedTarget') or 0)
        production = float(body.get('productionTarget') or combined)
        dpdi = float(body.get('dpdiTarget') or 0)
    except (TypeError, ValueError) as exc:
        return _error(str(exc), 400)

    baseline, error = _store().fetch_inspection(month_id)
    if error:
        return _storage_error(error)
    if baseline is None:
        return _error(f"Month {month_id} not found", 404)
    year = year or baseline.year + 1

    existing, error = _store().fetch_year_target(year)
    if error:
        return _storage_error(error)

    filter_type = body.get('filterType') or 'combined'
    if filter_type not in ('production', 'dpdi', 'combined'):
        return _error(f"Unknown filter type: {filter_type}", 400)
    try:
        target = build_year_target(
            year,
            baseline,
            combined_target=combined,
            production_target=production,
            dpdi_target=dpdi,
            strategy=body.get('allocationStrategy') or 'proportional',
            filter_type=filter_type,
            manual=body.get('manualTargets'),
            existing=existing,
        )
    except (KeyError, TypeError, ValueError) as exc:
        return _error(str(exc), 400)

    overall = {'production': production, 'dpdi': dpdi, 'combined': combined}[filter_type]
    valid = validate_targets(target.stage_targets, overall)
    if not valid:
        current_app.logger.warning(
            "Stage targets for %s do not add up to %.2f", year, overall
        )

    if body.get('save'):
        _, error = _store().upsert_year_target(target)
        if error:
            return _storage_error(error)
    return jsonify({'success': True, 'data': target.to_document(), 'valid': valid})


# Intervention plans


@main_bp.route('/api/interventions', methods=['GET'])
@login_required
def api_interventions():
    try:
        year = _parse_year(request.args.get('year')) or date.today().year
    except ValueError as exc:
        return _error(str(exc), 400)

    stage_name = (request.args.get('stageName') or '').strip()
    if stage_name:
        plan, error = _store().fetch_intervention_plan(plan_stage_id(stage_name), year)
        if error:
            return _storage_error(error)
        if plan is None:
            return _error(f"No intervention plan for {stage_name} in {year}", 404)
        return jsonify({'success': True, 'data': plan.to_document()})

    plans, error = _store().fetch_intervention_plans(year)
    if error:
        return _storage_error(error)
    return jsonify({'success': True, 'data': [plan.to_document() for plan in plans]})


@main_bp.route('/api/interventions', methods=['POST'])
@login_required
def api_save_intervention_plan():
    """Save a stage's intervention plan with a fresh state and projections."""

    body = dict(request.get_json(silent=True) or {})
    body.setdefault('createdBy', session.get('username'))
    try:
        plan = InterventionPlan.from_document(body)
    except (KeyError, TypeError, ValueError) as exc:
        return _error(str(exc), 400)

    months, error = _store().fetch_inspections(plan.year)
    if error:
        return _storage_error(error)
    year_target, error = _store().fetch_year_target(plan.year)
    if error:
        return _storage_error(error)
    existing, error = _store().fetch_intervention_plan(plan.stage_id, plan.year)
    if error:
        return _storage_error(error)

    current_state = current_state_for_stage(months, plan.stage_name, year_target)
    stamp = _now()
    plan = replace(
        plan,
        current_state=current_state,
        projections=calculate_projections(current_state, plan.interventions),
        created_at=existing.created_at if existing and existing.created_at else stamp,
        updated_at=stamp,
    )
    _, error = _store().upsert_intervention_plan(plan)
    if error:
        return _storage_error(error)
    return jsonify({'success': True, 'data': plan.to_document()}), 200 if existing else 201


@main_bp.route('/api/interventions', methods=['DELETE'])
@admin_required
def api_delete_intervention_plan():
    stage_name = (request.args.get('stageName') or '').strip()
    try:
        year = _parse_year(request.args.get('year'))
    except ValueError as exc:
        return _error(str(exc), 400)
    if not stage_name or year is None:
        return _error('Missing required fields: stageName and year', 400)

    deleted, error = _store().delete_intervention_plan(plan_stage_id(stage_name), year)
    if error:
        return _storage_error(error)
    if not deleted:
        return _error(f"No intervention plan for {stage_name} in {year}", 404)
    return jsonify({'success': True})


# Glide path and report


@main_bp.route('/api/glide-path', methods=['GET'])
@login_required
def api_glide_path():
    """Glide path from ``currentDpu`` to ``targetDpu`` by the end of the year."""

    today = date.today()
    try:
        current_dpu = float(request.args['currentDpu'])
        target_dpu = float(
            request.args.get('targetDpu') or current_app.config['DPU_YEAR_END_TARGET']
        )
        month = int(request.args.get('month', today.month - 1))
        year = int(request.args.get('year', today.year))
    except KeyError:
        return _error('currentDpu is required', 400)
    except (TypeError, ValueError) as exc:
        return _error(str(exc), 400)
    if not 0 <= month <= 11:
        return _error('month must be between 0 and 11', 400)

    glide_path = calculate_glide_path(current_dpu, target_dpu, month, year)
    return jsonify({'success': True, 'data': glide_path.to_document()})


def _report_context():
    """Return the report payload for the requested year, or ``(None, error)``."""

    try:
        year = _parse_year(request.args.get('year'))
    except ValueError as exc:
        return None, (str(exc), 400)
    months, error = _store().fetch_inspections()
    if error:
        current_app.logger.error("Report fetch failed: %s", error)
        return None, (error, 500)
    try:
        payload = build_report_payload(
            months,
            year=year,
            year_end_target=current_app.config['DPU_YEAR_END_TARGET'],
            today=datetime.now(_report_timezone()).date(),
        )
    except ValueError as exc:
        return None, (str(exc), 404)
    return payload, None


@main_bp.route('/api/report', methods=['GET'])
@login_required
def api_report():
    payload, failure = _report_context()
    if failure:
        return _error(*failure)
    return jsonify({'success': True, 'data': payload})


@main_bp.route('/report', methods=['GET'])
def report():
    """Render the monthly quality report page."""
    if 'username' not in session:
        return redirect(url_for('auth.login'))

    payload, failure = _report_context()
    if failure:
        message, status = failure
        return render_template('report.html', error=message), status
    charts = generate_report_charts(payload)
    return render_template(
        'report.html',
        report_css=_load_report_css(),
        generated_at=datetime.now(_report_timezone()).strftime('%Y-%m-%d %H:%M:%S %Z'),
        **payload,
        **(charts or {}),
    )


@main_bp.route('/report/export')
def export_report():
    if 'username' not in session:
        return redirect(url_for('auth.login'))

    payload, failure = _report_context()
    if failure:
        message, status = failure
        return jsonify({'message': message}), status
    charts = generate_report_charts(payload)

    title = request.args.get('title') or 'Monthly DPU Quality Report'
    generated_at = datetime.now(_report_timezone()).strftime('%Y-%m-%d %H:%M:%S %Z')
    context = {
        'title': title,
        'author': request.args.get('author') or session.get('username'),
        'generated_at': generated_at,
        'report_css': _load_report_css(),
        'export': True,
        **payload,
        **(charts or {}),
    }
    html = render_template('report.html', **context)

    fmt = request.args.get('format') or 'html'
    filename_stem = f"{payload['month_ending']}_dpu_report"
    if fmt == 'pdf':
        try:
            pdf = render_html_to_pdf(html, base_url=request.url_root)
        except PdfGenerationError as exc:
            current_app.logger.warning("PDF export failed: %s", exc)
            return jsonify({'message': str(exc)}), 503
        return send_file(
            io.BytesIO(pdf),
            mimetype='application/pdf',
            download_name=f"{filename_stem}.pdf",
            as_attachment=True,
        )
    if fmt == 'html':
        return send_file(
            io.BytesIO(html.encode('utf-8')),
            mimetype='text/html',
            download_name=f"{filename_stem}.html",
            as_attachment=True,
        )
    return jsonify({'message': 'Unsupported format. Choose pdf or html.'}), 400
