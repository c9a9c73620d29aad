# Copyright 2019 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     https://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"Shared fixtures and the scripted Terraform driver used by scenario tests."

import os

import pytest
import tfscenario


_DEFAULTS = {
    'init': 'Terraform has been successfully initialized!',
    'validate': tfscenario.TerraformValidateOutput({
        'valid': True, 'error_count': 0, 'warning_count': 0,
        'diagnostics': []}),
    'plan': 'Saved the plan',
    'show_plan_file': tfscenario.TerraformPlanOutput({}),
    'apply': 'Apply complete! Resources: 0 added, 0 changed, 0 destroyed.',
    'destroy': 'Destroy complete! Resources: 0 destroyed.',
    'output': tfscenario.TerraformValueDict({}),
}


class FakeTerraform(object):
  "Driver replaying scripted responses and recording calls."

  def __init__(self, factory, tfdir, binary, env):
    self.factory = factory
    self.tfdir = tfdir
    self.binary = binary
    self.env = env

  def _call(self, cmd, **kwargs):
    self.factory.calls.append((self.tfdir, cmd, kwargs))
    responses = self.factory.responses.get((self.tfdir, cmd)) or \
        self.factory.responses.get((None, cmd))
    if responses:
      # the last response repeats
      response = responses.pop(0) if len(responses) > 1 else responses[0]
    else:
      response = _DEFAULTS[cmd]
    if isinstance(response, Exception):
      raise response
    return response

  def init(self, **kwargs):
    return self._call('init', **kwargs)

  def validate(self, **kwargs):
    return self._call('validate', **kwargs)

  def plan(self, out, **kwargs):
    with open(out, 'w') as fp:
      fp.write('plan')
    return self._call('plan', out=out, **kwargs)

  def show_plan_file(self, path, **kwargs):
    return self._call('show_plan_file', path=path, **kwargs)

  def apply(self, **kwargs):
    kwargs['tf_vars'] = dict(kwargs.get('tf_vars') or {})
    return self._call('apply', **kwargs)

  def destroy(self, **kwargs):
    return self._call('destroy', **kwargs)

  def output(self, **kwargs):
    return self._call('output', **kwargs)


class FakeTerraformFactory(object):
  "Driver factory for scenarios, shared by all drivers of a test."

  def __init__(self):
    self.calls = []
    self.responses = {}
    self.provider_files_seen = []

  def __call__(self, tfdir, binary, env):
    self.provider_files_seen.append(
        os.path.exists(os.path.join(tfdir, 'provider.tf')))
    return FakeTerraform(self, tfdir, binary, env)

  def script(self, cmd, *responses, tfdir=None):
    self.responses[(tfdir, cmd)] = list(responses)

  def commands(self, tfdir=None):
    return [c for d, c, _ in self.calls if tfdir is None or d == tfdir]


@pytest.fixture
def fixtures_dir():
  return os.path.join(os.path.dirname(os.path.abspath(__file__)), 'fixtures')


@pytest.fixture
def fake_terraform():
  return FakeTerraformFactory()


@pytest.fixture
def module_dir(tmp_path):
  path = tmp_path / 'module'
  path.mkdir()
  return str(path)
